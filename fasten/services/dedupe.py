from __future__ import annotations
from typing import Dict, Iterable, List

from ..models import NormalizedRecord, RawRecord, UNKNOWN_PROVIDER
from .transforms import open_envelope, record_id, resolve_kind


def raw_key(record: RawRecord) -> str | None:
    env = open_envelope(record)
    rid = record_id(env)
    if not rid:
        return None
    _kind, type_name = resolve_kind(env)
    return f"{type_name}|{rid}"


def dedupe_raw(records: Iterable[RawRecord]) -> List[RawRecord]:
    """Drop repeated raw records by ``"{kind}|{id}"``; the first occurrence wins.
    Records without any id cannot be keyed and always pass through.
    """
    seen = set()
    out: List[RawRecord] = []
    for rec in records:
        if not isinstance(rec, dict):
            continue
        key = raw_key(rec)
        if key is None:
            out.append(rec)
            continue
        if key in seen:
            continue
        seen.add(key)
        out.append(rec)
    return out


def normalized_key(record: NormalizedRecord) -> str:
    return f"{record.title}|{record.date}|{record.provider}"


def sort_by_date(records: Iterable[NormalizedRecord]) -> List[NormalizedRecord]:
    """Newest first; undated records follow in their original relative order."""
    items = list(records)
    dated = [r for r in items if r.timestamp is not None]
    undated = [r for r in items if r.timestamp is None]
    dated.sort(key=lambda r: r.timestamp, reverse=True)
    return dated + undated


def dedupe_normalized(records: Iterable[NormalizedRecord]) -> List[NormalizedRecord]:
    """Collapse records describing the same fact.

    Exact ``"{title}|{date}|{provider}"`` repeats keep the first occurrence.
    A record with "Unknown Provider" also matches any record sharing its title
    and date: a named-provider record replaces an earlier unknown one in
    place, and an unknown one arriving after a named one is dropped. The
    result is ordered by :func:`sort_by_date`.
    """
    slots: Dict[str, int] = {}
    # title|date -> positions of kept records without / with a provider
    unknown_at: Dict[str, int] = {}
    named_at: Dict[str, List[int]] = {}
    kept: List[NormalizedRecord] = []
    for rec in records:
        key = normalized_key(rec)
        if key in slots:
            continue
        fact = f"{rec.title}|{rec.date}"
        if rec.provider == UNKNOWN_PROVIDER:
            if named_at.get(fact):
                continue
            slots[key] = unknown_at[fact] = len(kept)
            kept.append(rec)
            continue
        idx = unknown_at.pop(fact, None)
        if idx is not None:
            slots.pop(normalized_key(kept[idx]), None)
            kept[idx] = rec
        else:
            idx = len(kept)
            kept.append(rec)
        slots[key] = idx
        named_at.setdefault(fact, []).append(idx)
    return sort_by_date(kept)
