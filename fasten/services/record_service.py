from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Callable, Iterable, List, Optional, Sequence

from ..gateways.data_gateway import AuthExpired, ClinicalDataGateway
from ..models import QueryDiagnostic, RawRecord, RecordSnapshot, ResourceKind
from .categorize import category_counts
from .dedupe import dedupe_normalized, dedupe_raw
from .query_orchestrator import QueryOrchestrator, summarize
from .storage import ClientPreferences
from .transforms import extract_many, extract_patients, open_envelope, record_id, reference_tail, resolve_kind
from .vitals import reduce_vitals

logger = logging.getLogger(__name__)

SELECT_PATIENT_MESSAGE = "Select which patient record is you to see your health records."


class MissingPatientContext(RuntimeError):
    """No patient identity has been designated as the signed-in user."""


def _patient_refs(resource: RawRecord) -> List[str]:
    refs: List[str] = []
    for key in ("subject", "patient"):
        val = resource.get(key)
        ref = val.get("reference") if isinstance(val, dict) else val
        tail = reference_tail(ref) if isinstance(ref, str) else None
        if tail:
            refs.append(tail)
    return refs


def filter_owned(records: Iterable[RawRecord], self_patient_id: Optional[str]) -> List[RawRecord]:
    """Keep only records belonging to the self-patient.

    Patient resources match on their own id; everything else on the tail of
    its ``subject``/``patient`` reference. Records without either are dropped.
    """
    if not self_patient_id:
        raise MissingPatientContext(SELECT_PATIENT_MESSAGE)
    out: List[RawRecord] = []
    for rec in records:
        env = open_envelope(rec)
        kind, _type_name = resolve_kind(env)
        if kind is ResourceKind.PATIENT:
            if record_id(env) == self_patient_id:
                out.append(rec)
            continue
        if self_patient_id in _patient_refs(env.resource):
            out.append(rec)
    return out


def build_snapshot(raw_records: Iterable[RawRecord], diagnostics: Sequence[QueryDiagnostic],
                   self_patient_id: Optional[str], *, generation: int = 0,
                   fetched_at: Optional[dt.datetime] = None) -> RecordSnapshot:
    """Run the pure part of the pipeline over already-fetched records."""
    unique = dedupe_raw(raw_records)
    snapshot = RecordSnapshot(
        generation=generation,
        patients=extract_patients(unique),
        diagnostics=list(diagnostics),
        fetched_at=fetched_at,
        message=summarize(diagnostics),
    )
    try:
        owned = filter_owned(unique, self_patient_id)
    except MissingPatientContext as e:
        snapshot.needs_patient_selection = True
        snapshot.message = str(e)
        snapshot.categories = category_counts([])
        return snapshot
    snapshot.records = dedupe_normalized(extract_many(owned))
    snapshot.vitals = reduce_vitals(owned)
    snapshot.categories = category_counts(snapshot.records)
    return snapshot


class RecordService:
    """Fetches, normalizes and publishes record snapshots for the signed-in user.

    Each fetch takes a generation number when it starts. A finished fetch only
    replaces the published snapshot when no later-started fetch published first.
    """

    def __init__(self, preferences: ClientPreferences,
                 gateway_factory: Callable[[ClientPreferences], ClinicalDataGateway], *,
                 resource_kinds: Optional[Sequence[str]] = None):
        self.preferences = preferences
        self.gateway_factory = gateway_factory
        self.resource_kinds = resource_kinds
        self._lock = threading.Lock()
        self._started = 0
        self._published = 0
        self._snapshot = RecordSnapshot()
        self._raw: List[RawRecord] = []
        self._diagnostics: List[QueryDiagnostic] = []

    @property
    def snapshot(self) -> RecordSnapshot:
        with self._lock:
            return self._snapshot

    def begin(self) -> int:
        with self._lock:
            self._started += 1
            return self._started

    def publish(self, generation: int, snapshot: RecordSnapshot, *,
                raw: Optional[List[RawRecord]] = None, token: Optional[str] = None,
                replaces: Optional[str] = None) -> bool:
        """Install ``snapshot`` unless a later-started fetch already published or a reset happened.

        ``token`` (a refreshed bearer token) is persisted under the same check, and only
        while the stored token is still ``replaces``, so a fetch that outlived a
        sign-out or domain change cannot store its token.
        """
        with self._lock:
            if generation <= self._published:
                logger.info("Discarding stale snapshot %s (published %s)", generation, self._published)
                return False
            self._published = generation
            self._snapshot = snapshot
            if raw is not None:
                self._raw = raw
                self._diagnostics = list(snapshot.diagnostics)
            if token and self.preferences.auth_token == replaces:
                self.preferences.auth_token = token
            return True

    def fetch(self) -> RecordSnapshot:
        token = self.preferences.auth_token
        if not token:
            raise AuthExpired("Not signed in")
        generation = self.begin()
        gateway = self.gateway_factory(self.preferences)
        orchestrator = QueryOrchestrator(gateway, token_refresher=gateway.refresh_token)
        result = orchestrator.fetch_all(self.resource_kinds, token)
        snapshot = build_snapshot(
            result.records,
            result.diagnostics,
            self.preferences.self_patient_id,
            generation=generation,
            fetched_at=dt.datetime.now(dt.timezone.utc),
        )
        logger.info("Fetch %s: %d records, %d diagnostics", generation, len(snapshot.records), len(snapshot.diagnostics))
        refreshed = result.token if result.token and result.token != token else None
        self.publish(generation, snapshot, raw=list(result.records), token=refreshed, replaces=token)
        return self.snapshot

    def rebuild(self) -> RecordSnapshot:
        """Re-run the pipeline over the last fetched records, e.g. after the self-patient changes."""
        with self._lock:
            raw, diagnostics = list(self._raw), list(self._diagnostics)
        generation = self.begin()
        snapshot = build_snapshot(raw, diagnostics, self.preferences.self_patient_id,
                                  generation=generation, fetched_at=self.snapshot.fetched_at)
        self.publish(generation, snapshot)
        return self.snapshot

    def reset(self) -> None:
        """Forget everything fetched so far (sign-out, domain change)."""
        with self._lock:
            self._published = self._started
            self._snapshot = RecordSnapshot(generation=self._started)
            self._raw = []
            self._diagnostics = []
