from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _clean_str(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_context(*, generation: Optional[Any] = None, domain: Optional[Any] = None,
                  username: Optional[Any] = None) -> Dict[str, Any]:
    """Assemble the per-response context block.

    ``generation`` identifies the record snapshot the payload came from so the
    client can ignore responses older than what it already shows. Missing
    entries are omitted; ``issuedAt`` is always present.
    """
    context: Dict[str, Any] = {}
    if generation is not None:
        try:
            context['generation'] = int(generation)
        except (TypeError, ValueError):
            pass
    resolved_domain = _clean_str(domain)
    if resolved_domain:
        context['domain'] = resolved_domain
    resolved_user = _clean_str(username)
    if resolved_user:
        context['username'] = resolved_user
    context['issuedAt'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
    return context


def merge_context(payload: Any, **overrides: Any) -> Any:
    """Attach the context block to a response payload.

    Dict payloads that already carry a ``context`` key are returned unchanged;
    non-dict payloads are wrapped as ``{'result': payload, 'context': ...}``.
    """
    context = build_context(**overrides)
    if isinstance(payload, dict):
        if 'context' not in payload:
            payload = dict(payload)
            payload['context'] = context
        return payload
    return {
        'result': payload,
        'context': context,
    }
