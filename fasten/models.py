from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

RawRecord = Dict[str, Any]

UNKNOWN_DATE = "Unknown Date"
UNKNOWN_PROVIDER = "Unknown Provider"


class ResourceKind(Enum):
    OBSERVATION = "Observation"
    MEDICATION_REQUEST = "MedicationRequest"
    MEDICATION_STATEMENT = "MedicationStatement"
    CONDITION = "Condition"
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    PROCEDURE = "Procedure"
    ENCOUNTER = "Encounter"
    PATIENT = "Patient"
    IMAGING_STUDY = "ImagingStudy"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"
    CARE_PLAN = "CarePlan"
    IMMUNIZATION = "Immunization"
    DOCUMENT_REFERENCE = "DocumentReference"
    UNKNOWN = "Unknown"

    @classmethod
    def from_type(cls, value: Any) -> "ResourceKind":
        text = str(value or "").strip()
        for kind in cls:
            if kind.value == text:
                return kind
        return cls.UNKNOWN


class Category(Enum):
    LAB_RESULTS = "Lab Results"
    VITAL_SIGNS = "Vital Signs"
    MEDICATIONS = "Medications"
    CONDITIONS = "Conditions"
    IMAGING = "Imaging"
    VISITS = "Visits"


class VitalType(Enum):
    BLOOD_PRESSURE = "blood-pressure"
    HEART_RATE = "heart-rate"
    TEMPERATURE = "temperature"
    WEIGHT = "weight"
    BMI = "bmi"
    HEIGHT = "height"
    GLUCOSE = "glucose"
    OXYGEN = "oxygen"
    RESPIRATORY = "respiratory"
    OTHER = "other"


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class NormalizedRecord:
    """Display-ready summary of one clinical resource."""

    id: str
    title: str
    date: str
    provider: str
    category: Category
    resource_kind: ResourceKind
    # parsed date, only used for ordering
    timestamp: Optional[dt.datetime] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "date": self.date,
            "provider": self.provider,
            "category": self.category.value,
            "resourceKind": self.resource_kind.value,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class VitalSignSample:
    vital_type: VitalType
    display_name: str
    value: str
    observed_at: Optional[dt.datetime]
    formatted_date: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vitalType": self.vital_type.value,
            "displayName": self.display_name,
            "value": self.value,
            "observedAt": _iso(self.observed_at),
            "formattedDate": self.formatted_date,
        }


@dataclass(frozen=True)
class CategoryCount:
    category: Category
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category.value, "count": self.count}


@dataclass(frozen=True)
class PatientIdentity:
    id: str
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "displayName": self.display_name}


@dataclass(frozen=True)
class QueryDiagnostic:
    """Non-fatal failure report for a single resource-kind query."""

    resource_kind: str
    error: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"resourceKind": self.resource_kind, "error": self.error, "message": self.message}


@dataclass
class RecordSnapshot:
    """Everything one fetch-and-render cycle produced. Replaced wholesale on the next fetch."""

    generation: int = 0
    records: List[NormalizedRecord] = field(default_factory=list)
    vitals: List[VitalSignSample] = field(default_factory=list)
    categories: List[CategoryCount] = field(default_factory=list)
    patients: List[PatientIdentity] = field(default_factory=list)
    diagnostics: List[QueryDiagnostic] = field(default_factory=list)
    fetched_at: Optional[dt.datetime] = None
    needs_patient_selection: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "records": [r.to_dict() for r in self.records],
            "vitals": [v.to_dict() for v in self.vitals],
            "categories": [c.to_dict() for c in self.categories],
            "patients": [p.to_dict() for p in self.patients],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "fetchedAt": _iso(self.fetched_at),
            "needsPatientSelection": self.needs_patient_selection,
            "message": self.message,
        }
