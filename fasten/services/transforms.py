from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import datetime as dt
import hashlib
import json
import re

from ..models import (
    NormalizedRecord,
    PatientIdentity,
    RawRecord,
    ResourceKind,
    UNKNOWN_DATE,
    UNKNOWN_PROVIDER,
)
from .categorize import categorize


# --------------------- Wrapper envelopes ---------------------

_RAW_KEYS = ("resource_raw", "resourceRaw")
_SORT_DATE_KEYS = ("sort_date", "sortDate")
_SORT_TITLE_KEYS = ("sort_title", "sortTitle")
_SOURCE_TYPE_KEYS = ("source_resource_type", "sourceResourceType")
_SOURCE_ID_KEYS = ("source_resource_id", "sourceResourceId")
_CREATED_KEYS = ("created_at", "createdAt")
_UPDATED_KEYS = ("updated_at", "updatedAt")


@dataclass(frozen=True)
class Envelope:
    """A raw record split into its clinical resource and gateway metadata.

    For plain resources ``resource`` is the record itself and every metadata
    field is None.
    """
    resource: RawRecord
    wrapped: bool = False
    wrapper_id: Optional[str] = None
    explicit_type: Optional[str] = None
    sort_date: Optional[str] = None
    sort_title: Optional[str] = None
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None


def _first_key(obj: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        val = obj.get(key)
        if val is None:
            continue
        text = str(val).strip()
        if text:
            return text
    return None


def _parse_json_object(value: Any) -> Optional[Dict[str, Any]]:
    """Return a dict from a dict or a JSON-encoded string; malformed input yields None."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            loaded = json.loads(value)
        except ValueError:
            return None
        return loaded if isinstance(loaded, dict) else None
    return None


def is_wrapped(record: RawRecord) -> bool:
    return any(key in record for key in _RAW_KEYS)


def open_envelope(record: RawRecord) -> Envelope:
    if not isinstance(record, dict) or not is_wrapped(record):
        return Envelope(resource=record if isinstance(record, dict) else {})
    inner: Optional[Dict[str, Any]] = None
    for key in _RAW_KEYS:
        if key in record:
            inner = _parse_json_object(record.get(key))
            break
    if inner is None:
        # unreadable wrapped resource: keep only what the wrapper itself says
        inner = {}
    return Envelope(
        resource=inner,
        wrapped=True,
        wrapper_id=_first_key(record, ("id",)),
        explicit_type=_first_key(record, ("resourceType",)),
        sort_date=_first_key(record, _SORT_DATE_KEYS),
        sort_title=_first_key(record, _SORT_TITLE_KEYS),
        source_type=_first_key(record, _SOURCE_TYPE_KEYS),
        source_id=_first_key(record, _SOURCE_ID_KEYS),
        created=_first_key(record, _CREATED_KEYS),
        updated=_first_key(record, _UPDATED_KEYS),
    )


def resolve_kind(env: Envelope) -> Tuple[ResourceKind, str]:
    """Return (kind, type name). Explicit resourceType beats the wrapper's source type."""
    type_name = (
        _first_key(env.resource, ("resourceType",))
        or env.explicit_type
        or env.source_type
        or ResourceKind.UNKNOWN.value
    )
    return ResourceKind.from_type(type_name), type_name


def record_id(env: Envelope) -> Optional[str]:
    """Natural id: the resource's own id, then the wrapper's source id, then the wrapper id."""
    return _first_key(env.resource, ("id",)) or env.source_id or env.wrapper_id


def synthesize_id(record: RawRecord) -> str:
    canonical = json.dumps(record, sort_keys=True, default=str, separators=(",", ":"))
    return "synthetic-" + hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


# --------------------- FHIR-ish field helpers ---------------------

def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def reference_tail(reference: Any) -> Optional[str]:
    text = str(reference or "").strip()
    if not text:
        return None
    if text.startswith("urn:uuid:"):
        text = text[len("urn:uuid:"):]
    return text.rsplit("/", 1)[-1] or None


def _codings(concept: Any) -> List[Dict[str, Any]]:
    if not isinstance(concept, dict):
        return []
    codings = concept.get("coding")
    if not isinstance(codings, list):
        return []
    return [c for c in codings if isinstance(c, dict)]


def concept_codes(concept: Any) -> List[str]:
    return [str(c["code"]).strip() for c in _codings(concept) if c.get("code")]


def concept_display(concept: Any) -> Optional[str]:
    """Coded display first, then the concept text, then the bare code."""
    if isinstance(concept, str):
        return concept.strip() or None
    codings = _codings(concept)
    for c in codings:
        if c.get("display"):
            return str(c["display"]).strip()
    if isinstance(concept, dict) and concept.get("text"):
        return str(concept["text"]).strip()
    for c in codings:
        if c.get("code"):
            return str(c["code"]).strip()
    return None


def concept_texts(concept: Any) -> List[str]:
    """Every human-readable string on a concept (text plus coding displays)."""
    out: List[str] = []
    if isinstance(concept, dict) and concept.get("text"):
        out.append(str(concept["text"]))
    for c in _codings(concept):
        if c.get("display"):
            out.append(str(c["display"]))
    return out


def _fmt_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _fmt_quantity(q: Any) -> Optional[str]:
    if not isinstance(q, dict) or q.get("value") is None:
        return None
    unit = q.get("unit") or q.get("code") or ""
    text = _fmt_number(q["value"])
    return f"{text} {unit}".strip()


def _split_camel(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", name).strip()


# --------------------- Dates ---------------------

_MONTHS = ("January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December")

_RESOURCE_DATE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("effectiveDateTime",),
    ("effectivePeriod", "start"),
    ("issued",),
    ("date",),
    ("authoredOn",),
    ("recorded",),
    ("period", "start"),
    ("onset",),
    ("onsetDateTime",),
    ("recordedDate",),
    ("meta", "lastUpdated"),
)


def _dig(obj: Any, path: Tuple[str, ...]) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_datetime(val: Any) -> Optional[dt.datetime]:
    """Best-effort parse of ISO datetimes, partial FHIR dates (YYYY, YYYY-MM) and yyyymmdd digits.
    Naive values are taken as UTC. Returns None when nothing matches.
    """
    if val is None or isinstance(val, bool):
        return None
    s = str(val).strip()
    if not s:
        return None
    try:
        if "T" in s or "-" in s:
            iso = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], s.replace("Z", "+00:00"))
            d = dt.datetime.fromisoformat(iso)
            return d if d.tzinfo else d.replace(tzinfo=dt.timezone.utc)
    except ValueError:
        pass
    m = re.fullmatch(r"(\d{4})(?:-(\d{2}))?", s)
    if m:
        try:
            return dt.datetime(int(m.group(1)), int(m.group(2) or 1), 1, tzinfo=dt.timezone.utc)
        except ValueError:
            return None
    if s.isdigit() and len(s) in (8, 12, 14):
        try:
            y, mo, d = int(s[0:4]), int(s[4:6]), int(s[6:8])
            hh = int(s[8:10]) if len(s) >= 10 else 0
            mm = int(s[10:12]) if len(s) >= 12 else 0
            ss = int(s[12:14]) if len(s) >= 14 else 0
            return dt.datetime(y, mo, d, hh, mm, ss, tzinfo=dt.timezone.utc)
        except ValueError:
            return None
    return None


def format_display_date(raw: Any) -> Tuple[str, Optional[dt.datetime]]:
    """Return ("Month Day, Year", parsed) for parseable input, (raw, None) otherwise,
    and ("Unknown Date", None) when there is no date at all.
    """
    if raw is None or str(raw).strip() == "":
        return UNKNOWN_DATE, None
    parsed = parse_datetime(raw)
    if parsed is None:
        return str(raw), None
    return f"{_MONTHS[parsed.month - 1]} {parsed.day}, {parsed.year}", parsed


def resolve_raw_date(env: Envelope) -> Optional[str]:
    for meta in (env.sort_date, env.created, env.updated):
        if meta:
            return meta
    res = env.resource
    for path in _RESOURCE_DATE_PATHS:
        val = _dig(res, path)
        # onset[x] may be a Period/Age object; only string forms count here
        if isinstance(val, (str, int, float)) and not isinstance(val, bool) and str(val).strip():
            return str(val).strip()
    return None


# --------------------- Providers ---------------------

def _party_name(value: Any) -> Optional[str]:
    party = _first(value)
    if isinstance(party, str):
        return reference_tail(party)
    if not isinstance(party, dict):
        return None
    if party.get("display"):
        return str(party["display"]).strip()
    actor = party.get("actor")
    if isinstance(actor, dict) and actor.get("display"):
        return str(actor["display"]).strip()
    ref = party.get("reference") or (actor.get("reference") if isinstance(actor, dict) else None)
    return reference_tail(ref)


def _participant_individual(value: Any) -> Optional[str]:
    first = _first(value)
    if not isinstance(first, dict):
        return None
    return _party_name(first.get("individual"))


_PROVIDER_RESOLVERS: Tuple[Callable[[RawRecord], Optional[str]], ...] = (
    lambda r: _party_name(r.get("performer")),
    lambda r: _party_name(r.get("requester")),
    lambda r: _participant_individual(r.get("participant")),
    lambda r: _party_name(r.get("author")),
    lambda r: _party_name(r.get("organization")),
    lambda r: _party_name(r.get("custodian")),
)


def resolve_provider(resource: RawRecord) -> str:
    for resolver in _PROVIDER_RESOLVERS:
        name = resolver(resource)
        if name:
            return name
    return UNKNOWN_PROVIDER


# ===================== Observations =====================

_SYSTOLIC_CODES = ("8480-6",)
_DIASTOLIC_CODES = ("8462-4",)


def _component_with(components: List[Dict[str, Any]], codes: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
    for comp in components:
        if any(code in codes for code in concept_codes(comp.get("code"))):
            return comp
    return None


def _direct_value(obj: Dict[str, Any]) -> Optional[str]:
    q = _fmt_quantity(obj.get("valueQuantity"))
    if q:
        return q
    if obj.get("valueCodeableConcept") is not None:
        text = concept_display(obj.get("valueCodeableConcept"))
        if text:
            return text
    for key in ("valueString", "valueInteger", "valueDateTime", "valueTime"):
        val = obj.get(key)
        if val is not None and str(val).strip():
            return _fmt_number(val)
    if isinstance(obj.get("valueBoolean"), bool):
        return "Yes" if obj["valueBoolean"] else "No"
    rng = obj.get("valueRange")
    if isinstance(rng, dict):
        low = _fmt_quantity(rng.get("low"))
        high = _fmt_quantity(rng.get("high"))
        if low and high:
            return f"{low} - {high}"
        return low or high
    return None


def format_observation_value(resource: RawRecord) -> Optional[str]:
    """Render an Observation's value; None when it carries no recognized value."""
    direct = _direct_value(resource)
    if direct:
        return direct
    components = [c for c in (resource.get("component") or []) if isinstance(c, dict)]
    if not components:
        return None
    systolic = _component_with(components, _SYSTOLIC_CODES)
    diastolic = _component_with(components, _DIASTOLIC_CODES)
    if systolic and diastolic:
        sq = systolic.get("valueQuantity") or {}
        dq = diastolic.get("valueQuantity") or {}
        if isinstance(sq, dict) and isinstance(dq, dict) and sq.get("value") is not None and dq.get("value") is not None:
            unit = sq.get("unit") or dq.get("unit") or sq.get("code") or dq.get("code") or ""
            return f"{_fmt_number(sq['value'])}/{_fmt_number(dq['value'])} {unit}".strip()
    parts: List[str] = []
    for comp in components:
        val = _direct_value(comp)
        if not val:
            continue
        label = concept_display(comp.get("code"))
        parts.append(f"{label}: {val}" if label else val)
    return ", ".join(parts) or None


def _observation_title(res: RawRecord, name: Optional[str], type_name: str) -> Optional[str]:
    value = format_observation_value(res)
    if not value:
        return None
    label = name or concept_display(res.get("code")) or "Observation"
    return f"{label}: {value}"


# ===================== Medications =====================

def medication_name(res: RawRecord) -> Optional[str]:
    name = concept_display(res.get("medicationCodeableConcept"))
    if name:
        return name
    ref = res.get("medicationReference")
    if isinstance(ref, dict):
        if ref.get("display"):
            return str(ref["display"]).strip()
        return reference_tail(ref.get("reference"))
    return None


def _dosage_text(res: RawRecord) -> Optional[str]:
    dosage = _first(res.get("dosageInstruction")) or _first(res.get("dosage"))
    if not isinstance(dosage, dict):
        return None
    if dosage.get("text"):
        return str(dosage["text"]).strip()
    dose_and_rate = _first(dosage.get("doseAndRate"))
    dose = _fmt_quantity(dose_and_rate.get("doseQuantity")) if isinstance(dose_and_rate, dict) else None
    timing = dosage.get("timing") if isinstance(dosage.get("timing"), dict) else {}
    frequency = concept_display(timing.get("code")) if timing else None
    if dose and frequency:
        return f"{dose}, {frequency}"
    return dose or frequency


def _medication_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    label = name or medication_name(res) or "Medication"
    dosage = _dosage_text(res)
    return f"{label} - {dosage}" if dosage else label


# ===================== Conditions, reports, procedures, encounters =====================

def _status_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    return concept_display(value)


def _condition_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    label = name or concept_display(res.get("code")) or _generic_name(res, type_name)
    status = _status_text(res.get("clinicalStatus"))
    return f"{label} ({status})" if status else label


def _report_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    label = name or concept_display(res.get("code"))
    if not label:
        category = concept_display(_first(res.get("category")))
        label = f"{category} Report" if category else "Diagnostic Report"
    results = res.get("result")
    if isinstance(results, list):
        return f"{label} ({len(results)} results)"
    return label


def _procedure_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    label = name or concept_display(res.get("code")) or _generic_name(res, type_name)
    status = _status_text(res.get("status"))
    return f"{label} ({status})" if status else label


def _encounter_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    label = (
        name
        or concept_display(_first(res.get("type")))
        or concept_display(res.get("serviceType"))
        or concept_display(_first(res.get("class")))
        or _generic_name(res, type_name)
    )
    status = _status_text(res.get("status"))
    return f"{label} ({status})" if status else label


# ===================== Patients =====================

def patient_display_name(res: RawRecord) -> Optional[str]:
    entry = _first(res.get("name"))
    if isinstance(entry, str):
        return entry.strip() or None
    if not isinstance(entry, dict):
        return None
    if entry.get("text"):
        return str(entry["text"]).strip()
    given = entry.get("given")
    given_text = " ".join(str(g) for g in given) if isinstance(given, list) else str(given or "")
    full = f"{given_text} {entry.get('family') or ''}".strip()
    return full or None


def _patient_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    return f"Patient: {name or patient_display_name(res) or 'Unknown'}"


# ===================== Generic fallback =====================

def _generic_name(res: RawRecord, type_name: str) -> str:
    code = res.get("code")
    if isinstance(code, dict):
        if code.get("text"):
            return str(code["text"]).strip()
        codings = _codings(code)
        if codings:
            first = codings[0]
            if first.get("display") or first.get("code"):
                return str(first.get("display") or first.get("code")).strip()
    med = medication_name(res)
    if med:
        return med
    for key in ("category", "type"):
        concept = _first(res.get(key))
        if isinstance(concept, dict) and concept.get("text"):
            return str(concept["text"]).strip()
    name = res.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    person = patient_display_name(res)
    if person:
        return person
    return _split_camel(type_name)


def _generic_title(res: RawRecord, name: Optional[str], type_name: str) -> str:
    return name or _generic_name(res, type_name)


_TITLE_ADAPTERS: Dict[ResourceKind, Callable[[RawRecord, Optional[str], str], Optional[str]]] = {
    ResourceKind.OBSERVATION: _observation_title,
    ResourceKind.MEDICATION_REQUEST: _medication_title,
    ResourceKind.MEDICATION_STATEMENT: _medication_title,
    ResourceKind.CONDITION: _condition_title,
    ResourceKind.DIAGNOSTIC_REPORT: _report_title,
    ResourceKind.PROCEDURE: _procedure_title,
    ResourceKind.ENCOUNTER: _encounter_title,
    ResourceKind.PATIENT: _patient_title,
}


def resolve_title(env: Envelope) -> Optional[str]:
    kind, type_name = resolve_kind(env)
    adapter = _TITLE_ADAPTERS.get(kind, _generic_title)
    return adapter(env.resource, env.sort_title, type_name)


# ===================== Extraction entry points =====================

def extract(record: RawRecord) -> Optional[NormalizedRecord]:
    """Normalize one raw (possibly wrapped) record.

    Returns None when the record carries no usable value, e.g. an
    Observation without any recognized value field.
    """
    if not isinstance(record, dict):
        return None
    env = open_envelope(record)
    kind, _type_name = resolve_kind(env)
    title = resolve_title(env)
    if not title:
        return None
    date_text, timestamp = format_display_date(resolve_raw_date(env))
    return NormalizedRecord(
        id=record_id(env) or synthesize_id(record),
        title=title,
        date=date_text,
        provider=resolve_provider(env.resource),
        category=categorize(kind, env.resource),
        resource_kind=kind,
        timestamp=timestamp,
    )


def extract_many(records: Iterable[RawRecord]) -> List[NormalizedRecord]:
    out: List[NormalizedRecord] = []
    for rec in records:
        norm = extract(rec)
        if norm is not None:
            out.append(norm)
    return out


def extract_patient_identity(record: RawRecord) -> Optional[PatientIdentity]:
    if not isinstance(record, dict):
        return None
    env = open_envelope(record)
    kind, _type_name = resolve_kind(env)
    if kind is not ResourceKind.PATIENT:
        return None
    name = patient_display_name(env.resource) or env.sort_title or "Unknown Patient"
    return PatientIdentity(id=record_id(env) or synthesize_id(record), display_name=name)


def extract_patients(records: Iterable[RawRecord]) -> List[PatientIdentity]:
    seen: Dict[str, PatientIdentity] = {}
    for rec in records:
        ident = extract_patient_identity(rec)
        if ident is not None and ident.id not in seen:
            seen[ident.id] = ident
    return list(seen.values())
