from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class QueryResponse:
    """HTTP status plus decoded JSON body of one secure-query call."""

    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def reports_failure(self) -> bool:
        """True when a 2xx body still signals an application-level failure."""
        return isinstance(self.body, dict) and self.body.get("success") is False


class ClinicalDataGateway(Protocol):
    """Abstract interface for the remote clinical-data server."""

    def query(self, resource_kind: str, token: str, *, limit: Optional[int] = None) -> QueryResponse:
        """POST the secure query for one resource kind.
        Raises NetworkFailure on transport errors and MalformedResponse on undecodable bodies.
        """
        ...

    def refresh_token(self, token: str) -> Optional[str]:
        """Return a fresh bearer token, or None when the server refuses."""
        ...

    def check_reachable(self) -> int:
        """Raise NetworkFailure when the server does not answer at all."""
        ...

    def sign_in(self, username: str, password: str) -> str:
        ...

    def register(self, username: str, password: str, email: str) -> Dict[str, Any]:
        ...


class GatewayError(RuntimeError):
    pass


class MalformedResponse(GatewayError):
    """Body could not be decoded or has no recognizable envelope."""


class AuthExpired(GatewayError):
    """Server answered 401 for a bearer token."""


class ServerRejected(GatewayError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkFailure(GatewayError):
    """Transport-level failure (DNS, connect, timeout, TLS)."""


class AuthenticationFailed(GatewayError):
    """No sign-in endpoint produced a token."""
