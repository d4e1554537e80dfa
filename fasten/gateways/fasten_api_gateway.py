from __future__ import annotations
import json
import logging
import os
import requests
from typing import Any, Dict, Optional, Tuple
from .data_gateway import (
    AuthenticationFailed,
    GatewayError,
    MalformedResponse,
    NetworkFailure,
    QueryResponse,
    ServerRejected,
)

VERIFY_SSL = os.getenv("FASTEN_VERIFY_SSL", "true").lower() in ("1","true","yes","on")
HTTP_TIMEOUT = float(os.getenv("FASTEN_HTTP_TIMEOUT", "30"))

QUERY_PATH = "/api/secure/query"
REFRESH_PATH = "/api/auth/refresh"
REGISTER_PATH = "/auth/register"
# Tried in order until one yields a token
SIGNIN_PATHS = ("/api/auth/signin", "/api/auth/login", "/auth/login", "/auth/signin")

logger = logging.getLogger(__name__)


def normalize_domain(domain: str) -> str:
    """Prefix https:// when no scheme is given and drop trailing slashes."""
    text = str(domain or "").strip()
    if not text:
        raise GatewayError("Server domain is empty")
    if not text.startswith(("http://", "https://")):
        text = "https://" + text
    return text.rstrip("/")


def _token_from(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    tok = payload.get("data") or payload.get("token") or payload.get("access_token")
    if not tok:
        return None
    return tok if isinstance(tok, str) else json.dumps(tok)


class FastenApiGateway:
    """HTTP facade to the clinical-data server's secure query and auth endpoints."""
    def __init__(self, domain: str, *, session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None, verify: Optional[bool] = None):
        self.domain = normalize_domain(domain)
        self.session = session or requests.Session()
        self.timeout = HTTP_TIMEOUT if timeout is None else timeout
        self.verify = VERIFY_SSL if verify is None else verify

    def _post(self, path: str, body: Optional[dict] = None, *, token: Optional[str] = None,
              allow_redirects: bool = True) -> requests.Response:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.domain}{path}"
        try:
            return self.session.post(url, json=body, headers=headers, timeout=self.timeout,
                                     verify=self.verify, allow_redirects=allow_redirects)
        except requests.RequestException as e:
            raise NetworkFailure(f"POST {path} failed: {e}")

    def query(self, resource_kind: str, token: str, *, limit: Optional[int] = None) -> QueryResponse:
        body: Dict[str, Any] = {"from": str(resource_kind), "select": ["*"], "where": {}}
        if limit is not None:
            body["limit"] = int(limit)
        r = self._post(QUERY_PATH, body, token=token)
        if r.status_code == 401:
            # body is irrelevant for auth failures
            return QueryResponse(status_code=401)
        try:
            payload = r.json()
        except ValueError:
            if not (200 <= r.status_code < 300):
                return QueryResponse(status_code=r.status_code, body={"raw": r.text})
            raise MalformedResponse(f"{resource_kind} query returned a non-JSON body")
        return QueryResponse(status_code=r.status_code, body=payload)

    def check_reachable(self) -> int:
        """GET the server root. Any HTTP answer counts as reachable; returns its status."""
        try:
            r = self.session.get(self.domain, headers={"Accept": "text/html,application/json"},
                                 timeout=self.timeout, verify=self.verify)
        except requests.RequestException as e:
            raise NetworkFailure(f"Server {self.domain} is not reachable: {e}")
        logger.info("Server %s answered HTTP %s", self.domain, r.status_code)
        return r.status_code

    def refresh_token(self, token: str) -> Optional[str]:
        try:
            r = self._post(REFRESH_PATH, {}, token=token)
        except NetworkFailure as e:
            logger.warning("Token refresh failed: %s", e)
            return None
        if not r.ok:
            logger.warning("Token refresh rejected with HTTP %s", r.status_code)
            return None
        try:
            payload = r.json()
        except ValueError:
            return None
        tok = payload.get("token") if isinstance(payload, dict) else None
        if not tok:
            return None
        logger.info("Token refreshed")
        return str(tok)

    def sign_in(self, username: str, password: str) -> str:
        """Try each sign-in endpoint and return the first token found."""
        body = {"username": username, "password": password}
        last_problem = "no endpoint answered"
        for path in SIGNIN_PATHS:
            try:
                r = self._post(path, body, allow_redirects=False)
            except NetworkFailure as e:
                last_problem = str(e)
                logger.info("Sign-in endpoint %s unreachable", path)
                continue
            token, problem = self._read_signin_response(r)
            if token:
                logger.info("Signed in via %s", path)
                return token
            last_problem = f"{path}: {problem}"
        raise AuthenticationFailed(f"Login failed ({last_problem})")

    @staticmethod
    def _read_signin_response(r: requests.Response) -> Tuple[Optional[str], str]:
        if 300 <= r.status_code < 400:
            return None, "redirected"
        content_type = (r.headers.get("content-type") or "").lower()
        if "text/html" in content_type:
            return None, "HTML response"
        try:
            payload = r.json()
        except ValueError:
            return None, "response was not JSON"
        if not r.ok:
            message = payload.get("message") if isinstance(payload, dict) else None
            return None, message or f"HTTP {r.status_code}"
        token = _token_from(payload)
        if not token:
            return None, "token not found in response"
        return token, ""

    def register(self, username: str, password: str, email: str) -> Dict[str, Any]:
        r = self._post(REGISTER_PATH, {"username": username, "password": password, "email": email})
        try:
            payload = r.json()
        except ValueError:
            raise MalformedResponse("Registration response was not JSON")
        if not r.ok:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ServerRejected(message or "Registration failed. Please try again.", status_code=r.status_code)
        return payload if isinstance(payload, dict) else {"data": payload}
