import json

from fasten.models import Category, ResourceKind, UNKNOWN_DATE, UNKNOWN_PROVIDER
from fasten.services.transforms import (
    extract,
    extract_patients,
    format_display_date,
    format_observation_value,
    open_envelope,
    parse_datetime,
    reference_tail,
    resolve_provider,
)


def sample_bp_observation():
    return {
        "resourceType": "Observation",
        "id": "o1",
        "status": "final",
        "category": [{"coding": [{"code": "vital-signs", "display": "Vital Signs"}]}],
        "code": {"coding": [{"system": "http://loinc.org", "code": "85354-9", "display": "Blood pressure panel"}]},
        "subject": {"reference": "Patient/p1"},
        "effectiveDateTime": "2024-03-15T10:00:00Z",
        "performer": [{"display": "Dr. Smith"}],
        "component": [
            {"code": {"coding": [{"code": "8480-6", "display": "Systolic"}]},
             "valueQuantity": {"value": 120.0, "unit": "mmHg"}},
            {"code": {"coding": [{"code": "8462-4", "display": "Diastolic"}]},
             "valueQuantity": {"value": 80, "unit": "mmHg"}},
        ],
    }


def test_blood_pressure_observation():
    rec = extract(sample_bp_observation())
    assert rec is not None
    assert rec.id == "o1"
    assert rec.title == "Blood pressure panel: 120/80 mmHg"
    assert rec.date == "March 15, 2024"
    assert rec.provider == "Dr. Smith"
    assert rec.category is Category.VITAL_SIGNS
    assert rec.resource_kind is ResourceKind.OBSERVATION


def test_observation_without_value_is_skipped():
    obs = {"resourceType": "Observation", "id": "o2", "code": {"text": "Pending test"}}
    assert extract(obs) is None


def test_observation_value_forms():
    assert format_observation_value({"valueBoolean": True}) == "Yes"
    assert format_observation_value({"valueString": "negative"}) == "negative"
    assert format_observation_value({"valueCodeableConcept": {"text": "Positive"}}) == "Positive"
    rng = {"valueRange": {"low": {"value": 4, "unit": "mmol/L"}, "high": {"value": 6, "unit": "mmol/L"}}}
    assert format_observation_value(rng) == "4 mmol/L - 6 mmol/L"
    comps = {"component": [{"code": {"text": "Left"}, "valueQuantity": {"value": 20, "unit": "/20"}}]}
    assert format_observation_value(comps) == "Left: 20 /20"


def test_lab_observation_defaults_to_lab_results():
    obs = {
        "resourceType": "Observation",
        "id": "l1",
        "category": [{"coding": [{"code": "laboratory"}]}],
        "code": {"text": "Hemoglobin A1c"},
        "valueQuantity": {"value": 6.1, "unit": "%"},
        "issued": "2023-11-02",
    }
    rec = extract(obs)
    assert rec.title == "Hemoglobin A1c: 6.1 %"
    assert rec.category is Category.LAB_RESULTS
    assert rec.date == "November 2, 2023"


def test_wrapped_record_uses_wrapper_metadata():
    wrapped = {
        "id": "w1",
        "source_resource_type": "Condition",
        "source_resource_id": "c9",
        "sort_date": "2023-01-02",
        "sort_title": "Asthma",
        "resource_raw": json.dumps({
            "resourceType": "Condition",
            "code": {"text": "asthma, unspecified"},
            "clinicalStatus": {"coding": [{"code": "active"}]},
            "recordedDate": "2020-06-01",
        }),
    }
    rec = extract(wrapped)
    assert rec.id == "c9"
    assert rec.title == "Asthma (active)"
    assert rec.date == "January 2, 2023"
    assert rec.provider == UNKNOWN_PROVIDER
    assert rec.category is Category.CONDITIONS


def test_malformed_resource_raw_falls_back_to_wrapper():
    wrapped = {
        "source_resource_type": "Condition",
        "source_resource_id": "c3",
        "sort_title": "Seasonal allergies",
        "resourceRaw": "{not json",
    }
    env = open_envelope(wrapped)
    assert env.wrapped
    assert env.resource == {}
    rec = extract(wrapped)
    assert rec.title == "Seasonal allergies"
    assert rec.resource_kind is ResourceKind.CONDITION
    assert rec.date == UNKNOWN_DATE


def test_medication_title_with_dosage():
    med = {
        "resourceType": "MedicationRequest",
        "id": "m1",
        "medicationCodeableConcept": {"text": "Lisinopril 10 MG"},
        "dosageInstruction": [{"text": "Take once daily"}],
        "requester": {"display": "Dr. Jones"},
        "authoredOn": "2024-01-05",
    }
    rec = extract(med)
    assert rec.title == "Lisinopril 10 MG - Take once daily"
    assert rec.provider == "Dr. Jones"
    assert rec.category is Category.MEDICATIONS


def test_medication_dose_and_frequency():
    med = {
        "resourceType": "MedicationStatement",
        "id": "m2",
        "medicationReference": {"display": "Metformin"},
        "dosage": [{
            "doseAndRate": [{"doseQuantity": {"value": 500, "unit": "mg"}}],
            "timing": {"code": {"text": "BID"}},
        }],
    }
    assert extract(med).title == "Metformin - 500 mg, BID"


def test_report_title_counts_results():
    report = {
        "resourceType": "DiagnosticReport",
        "id": "r1",
        "category": [{"coding": [{"display": "Laboratory"}]}],
        "result": [{"reference": "Observation/a"}, {"reference": "Observation/b"}],
        "effectiveDateTime": "2022-05-09",
    }
    rec = extract(report)
    assert rec.title == "Laboratory Report (2 results)"
    assert rec.category is Category.LAB_RESULTS


def test_encounter_and_procedure_titles():
    enc = {"resourceType": "Encounter", "id": "e1", "type": [{"text": "Office visit"}], "status": "finished",
           "period": {"start": "2021-08-30T09:00:00-04:00"}}
    rec = extract(enc)
    assert rec.title == "Office visit (finished)"
    assert rec.date == "August 30, 2021"
    assert rec.category is Category.VISITS
    proc = {"resourceType": "Procedure", "id": "pr1", "code": {"text": "Appendectomy"}, "status": "completed"}
    assert extract(proc).title == "Appendectomy (completed)"


def test_patient_title_and_identities():
    patient = {"resourceType": "Patient", "id": "p1", "name": [{"given": ["Jane", "Q"], "family": "Doe"}]}
    assert extract(patient).title == "Patient: Jane Q Doe"
    others = [patient, {"resourceType": "Patient", "id": "p1"}, {"resourceType": "Condition", "id": "c1"}]
    idents = extract_patients(others)
    assert [(p.id, p.display_name) for p in idents] == [("p1", "Jane Q Doe")]


def test_generic_title_splits_type_name():
    rec = extract({"resourceType": "ImagingStudy", "id": "i1", "started": "2020-01-01"})
    assert rec.title == "Imaging Study"
    assert rec.category is Category.IMAGING
    unknown = extract({"resourceType": "FamilyMemberHistory", "id": "f1"})
    assert unknown.title == "Family Member History"
    assert unknown.resource_kind is ResourceKind.UNKNOWN


def test_missing_id_is_synthesized_and_stable():
    cond = {"resourceType": "Condition", "code": {"text": "Migraine"}}
    first = extract(cond)
    second = extract(dict(cond))
    assert first.id.startswith("synthetic-")
    assert first.id == second.id


def test_display_dates():
    assert format_display_date("2024-03")[0] == "March 1, 2024"
    assert format_display_date("20240315")[0] == "March 15, 2024"
    assert format_display_date("2019")[0] == "January 1, 2019"
    assert format_display_date("soon") == ("soon", None)
    assert format_display_date(None) == (UNKNOWN_DATE, None)


def test_fhir_instants_with_short_fractions():
    parsed = parse_datetime("2024-03-15T10:00:00.12Z")
    assert parsed is not None
    assert parsed.microsecond == 120000
    assert parse_datetime("2024-03-15T10:00:00.1234567+02:00").microsecond == 123456
    assert format_display_date("2023-07-04T23:59:59.5Z")[0] == "July 4, 2023"


def test_provider_chain():
    assert resolve_provider({"participant": [{"individual": {"reference": "Practitioner/pr-7"}}]}) == "pr-7"
    assert resolve_provider({"performer": [{"actor": {"display": "Lab Corp"}}]}) == "Lab Corp"
    assert resolve_provider({"requester": {"display": "A"}, "author": [{"display": "B"}]}) == "A"
    assert resolve_provider({"custodian": {"reference": "Organization/org1"}}) == "org1"
    assert resolve_provider({}) == UNKNOWN_PROVIDER


def test_reference_tail():
    assert reference_tail("Patient/123") == "123"
    assert reference_tail("urn:uuid:abc-def") == "abc-def"
    assert reference_tail("") is None
