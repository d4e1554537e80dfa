from __future__ import annotations
from typing import Any, Dict, Iterable, List

from ..models import Category, CategoryCount, NormalizedRecord, RawRecord, ResourceKind

_KIND_CATEGORY: Dict[ResourceKind, Category] = {
    ResourceKind.CONDITION: Category.CONDITIONS,
    ResourceKind.MEDICATION_REQUEST: Category.MEDICATIONS,
    ResourceKind.MEDICATION_STATEMENT: Category.MEDICATIONS,
    ResourceKind.ENCOUNTER: Category.VISITS,
    ResourceKind.PATIENT: Category.VISITS,
    ResourceKind.IMAGING_STUDY: Category.IMAGING,
}

_IMAGING_REPORT_TOKENS = ("rad", "radiology", "imaging", "lp29684-5")


def _category_tokens(record: RawRecord) -> List[str]:
    """Lower-cased codes, displays and texts from the record's category field(s)."""
    raw = record.get("category") if isinstance(record, dict) else None
    concepts = raw if isinstance(raw, list) else [raw]
    tokens: List[str] = []
    for concept in concepts:
        if isinstance(concept, str):
            tokens.append(concept.strip().lower())
            continue
        if not isinstance(concept, dict):
            continue
        if concept.get("text"):
            tokens.append(str(concept["text"]).strip().lower())
        for coding in concept.get("coding") or []:
            if not isinstance(coding, dict):
                continue
            for key in ("code", "display"):
                if coding.get(key):
                    tokens.append(str(coding[key]).strip().lower())
    return tokens


def categorize(kind: ResourceKind, record: Any) -> Category:
    if kind is ResourceKind.OBSERVATION:
        tokens = _category_tokens(record)
        if "vital-signs" in tokens or "vital signs" in tokens:
            return Category.VITAL_SIGNS
        return Category.LAB_RESULTS
    if kind is ResourceKind.DIAGNOSTIC_REPORT:
        tokens = _category_tokens(record)
        if any(tok in _IMAGING_REPORT_TOKENS for tok in tokens):
            return Category.IMAGING
        return Category.LAB_RESULTS
    return _KIND_CATEGORY.get(kind, Category.VISITS)


def count_by_category(records: Iterable[NormalizedRecord]) -> Dict[Category, int]:
    counts: Dict[Category, int] = {}
    for rec in records:
        counts[rec.category] = counts.get(rec.category, 0) + 1
    return counts


def category_counts(records: Iterable[NormalizedRecord]) -> List[CategoryCount]:
    """Counts for every category in enum order, zeros included."""
    counts = count_by_category(records)
    return [CategoryCount(category=cat, count=counts.get(cat, 0)) for cat in Category]
