from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from ..models import RawRecord

# Keys checked in order after the Bundle shape
_LIST_KEYS = ("results", "data", "rows")
_WRAPPER_TYPE_KEYS = ("source_resource_type", "sourceResourceType")


def _records_only(items: List[Any]) -> List[RawRecord]:
    return [it for it in items if isinstance(it, dict)]


def _looks_like_resource(obj: Dict[str, Any]) -> bool:
    if obj.get("resourceType") or obj.get("code") is not None:
        return True
    return any(obj.get(k) for k in _WRAPPER_TYPE_KEYS)


def unwrap_response(body: Any) -> Tuple[List[RawRecord], Optional[str]]:
    """Locate the resource list inside a query response body.

    Shapes are tried in a fixed order: a bare list, a FHIR Bundle
    (``entry[*].resource``), then the ``results``, ``data`` and ``rows``
    arrays, then a single resource object. Anything else yields an empty
    list and a diagnostic message; this never raises.
    """
    if isinstance(body, list):
        return _records_only(body), None
    if not isinstance(body, dict):
        return [], f"unrecognized response body of type {type(body).__name__}"
    if body.get("resourceType") == "Bundle":
        entries = body.get("entry")
        if not isinstance(entries, list):
            return [], None
        out: List[RawRecord] = []
        for entry in entries:
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict):
                out.append(entry["resource"])
        return out, None
    for key in _LIST_KEYS:
        if isinstance(body.get(key), list):
            return _records_only(body[key]), None
    if _looks_like_resource(body):
        return [body], None
    return [], "unrecognized response envelope"


def unwrap(body: Any) -> List[RawRecord]:
    records, _diagnostic = unwrap_response(body)
    return records
