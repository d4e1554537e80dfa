from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from ..gateways.data_gateway import (
    ClinicalDataGateway,
    MalformedResponse,
    NetworkFailure,
    QueryResponse,
)
from ..models import QueryDiagnostic, RawRecord, ResourceKind
from .transforms import open_envelope
from .unwrap import unwrap_response

logger = logging.getLogger(__name__)

FALLBACK_LIMIT = int(os.getenv("FASTEN_FALLBACK_LIMIT", "10"))

DEFAULT_RESOURCE_KINDS: Sequence[str] = (
    ResourceKind.PATIENT.value,
    ResourceKind.OBSERVATION.value,
    ResourceKind.MEDICATION_REQUEST.value,
    ResourceKind.MEDICATION_STATEMENT.value,
    ResourceKind.CONDITION.value,
    ResourceKind.DIAGNOSTIC_REPORT.value,
    ResourceKind.PROCEDURE.value,
    ResourceKind.ENCOUNTER.value,
    ResourceKind.IMAGING_STUDY.value,
    ResourceKind.ALLERGY_INTOLERANCE.value,
    ResourceKind.IMMUNIZATION.value,
)


class QueryState(Enum):
    PENDING = "pending"
    SENT = "sent"
    SUCCEEDED = "succeeded"
    AUTH_EXPIRED = "auth_expired"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"


class QueryAction(Enum):
    SEND = "send"
    REFRESH_AND_RETRY = "refresh_and_retry"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass
class QueryAttempt:
    """Book-keeping for the query of one resource kind."""
    resource_kind: str
    state: QueryState = QueryState.PENDING
    retried: bool = False
    fell_back: bool = False
    requests_sent: int = 0
    records: List[RawRecord] = field(default_factory=list)
    diagnostic: Optional[QueryDiagnostic] = None


def next_action(attempt: QueryAttempt, can_refresh: bool) -> QueryAction:
    """Transition function for a single query.

    At most one follow-up request is ever made: a refresh+retry after a 401
    or a reduced fallback after a server rejection. Whatever that follow-up
    returns ends the query.
    """
    state = attempt.state
    if state is QueryState.PENDING:
        return QueryAction.SEND
    if state is QueryState.SUCCEEDED:
        return QueryAction.DONE
    if attempt.retried or attempt.fell_back:
        return QueryAction.DONE
    if state is QueryState.AUTH_EXPIRED and can_refresh:
        return QueryAction.REFRESH_AND_RETRY
    if state is QueryState.SERVER_ERROR:
        return QueryAction.FALLBACK
    return QueryAction.DONE


def classify_response(response: QueryResponse) -> QueryState:
    if response.status_code == 401:
        return QueryState.AUTH_EXPIRED
    if not response.ok or response.reports_failure:
        return QueryState.SERVER_ERROR
    return QueryState.SUCCEEDED


def _failure_message(response: QueryResponse) -> str:
    body = response.body
    if isinstance(body, dict):
        detail = body.get("message") or body.get("error")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"


def self_reports_type(record: RawRecord) -> bool:
    if record.get("resourceType"):
        return True
    env = open_envelope(record)
    return bool(env.source_type or env.resource.get("resourceType"))


@dataclass
class FetchResult:
    records: List[RawRecord]
    diagnostics: List[QueryDiagnostic]
    # may differ from the token passed in when a refresh happened
    token: Optional[str] = None
    attempts: List[QueryAttempt] = field(default_factory=list)


class QueryOrchestrator:
    """Issues one secure query per resource kind, sequentially, and gathers whatever succeeds."""

    def __init__(self, gateway: ClinicalDataGateway, *,
                 token_refresher: Optional[Callable[[str], Optional[str]]] = None,
                 fallback_limit: int = FALLBACK_LIMIT):
        self.gateway = gateway
        self.token_refresher = token_refresher
        self.fallback_limit = fallback_limit
        self._token: Optional[str] = None

    def fetch_all(self, resource_kinds: Optional[Iterable[str]], token: str) -> FetchResult:
        self._token = token
        kinds = list(resource_kinds) if resource_kinds is not None else list(DEFAULT_RESOURCE_KINDS)
        records: List[RawRecord] = []
        diagnostics: List[QueryDiagnostic] = []
        attempts: List[QueryAttempt] = []
        for kind in kinds:
            attempt = self.run_query(kind)
            attempts.append(attempt)
            if attempt.diagnostic is not None:
                diagnostics.append(attempt.diagnostic)
            for rec in attempt.records:
                if self_reports_type(rec):
                    records.append(rec)
                else:
                    tagged = dict(rec)
                    tagged["resourceType"] = kind
                    records.append(tagged)
        return FetchResult(records=records, diagnostics=diagnostics, token=self._token, attempts=attempts)

    def run_query(self, kind: str) -> QueryAttempt:
        attempt = QueryAttempt(resource_kind=str(kind))
        can_refresh = self.token_refresher is not None
        last_response: Optional[QueryResponse] = None
        action = next_action(attempt, can_refresh)
        while action is not QueryAction.DONE:
            limit: Optional[int] = None
            if action is QueryAction.REFRESH_AND_RETRY:
                attempt.retried = True
                new_token = self._refresh()
                if not new_token:
                    attempt.diagnostic = QueryDiagnostic(kind, "AuthExpired", "Session expired and token refresh failed")
                    return attempt
                self._token = new_token
            elif action is QueryAction.FALLBACK:
                attempt.fell_back = True
                limit = self.fallback_limit
                logger.info("Retrying %s with reduced query (limit=%s)", kind, limit)
            attempt.state = QueryState.SENT
            attempt.requests_sent += 1
            try:
                last_response = self.gateway.query(kind, self._token or "", limit=limit)
            except NetworkFailure as e:
                logger.warning("Network failure querying %s: %s", kind, e)
                attempt.state = QueryState.NETWORK_ERROR
                attempt.diagnostic = QueryDiagnostic(kind, "NetworkFailure", str(e))
                return attempt
            except MalformedResponse as e:
                logger.warning("Malformed response for %s: %s", kind, e)
                attempt.state = QueryState.SUCCEEDED
                attempt.diagnostic = QueryDiagnostic(kind, "MalformedResponse", str(e))
                return attempt
            attempt.state = classify_response(last_response)
            action = next_action(attempt, can_refresh)

        if attempt.state is QueryState.SUCCEEDED and last_response is not None:
            found, problem = unwrap_response(last_response.body)
            attempt.records = found
            if problem:
                logger.warning("Unrecognized response for %s: %s", kind, problem)
                attempt.diagnostic = QueryDiagnostic(kind, "MalformedResponse", problem)
        elif attempt.state is QueryState.AUTH_EXPIRED:
            attempt.diagnostic = QueryDiagnostic(kind, "AuthExpired", "Server rejected the session token")
        elif attempt.state is QueryState.SERVER_ERROR and last_response is not None:
            attempt.diagnostic = QueryDiagnostic(kind, "ServerRejected", _failure_message(last_response))
        return attempt

    def _refresh(self) -> Optional[str]:
        if self.token_refresher is None:
            return None
        try:
            return self.token_refresher(self._token or "")
        except Exception as e:
            logger.warning("Token refresh raised: %s", e)
            return None


def summarize(diagnostics: Iterable[QueryDiagnostic]) -> Optional[str]:
    """One user-facing sentence for a batch of diagnostics."""
    items = list(diagnostics)
    if not items:
        return None
    kinds = ", ".join(sorted({d.resource_kind for d in items}))
    return f"Some records could not be loaded ({kinds}). Showing what was retrieved."
