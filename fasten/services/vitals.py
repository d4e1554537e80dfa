from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import Category, RawRecord, ResourceKind, VitalSignSample, VitalType
from .categorize import categorize
from .transforms import (
    concept_codes,
    concept_display,
    concept_texts,
    format_display_date,
    format_observation_value,
    open_envelope,
    resolve_kind,
    resolve_raw_date,
)

# Codes are checked before keywords; keyword order matters ("body mass" before "weight").
_VITAL_CODES: Dict[str, VitalType] = {
    '8480-6': VitalType.BLOOD_PRESSURE,
    '8462-4': VitalType.BLOOD_PRESSURE,
    '55284-4': VitalType.BLOOD_PRESSURE,
    '85354-9': VitalType.BLOOD_PRESSURE,
    '8867-4': VitalType.HEART_RATE,
    '8310-5': VitalType.TEMPERATURE,
    '29463-7': VitalType.WEIGHT,
    '39156-5': VitalType.BMI,
    '8302-2': VitalType.HEIGHT,
    '2339-0': VitalType.GLUCOSE,
    '2708-6': VitalType.OXYGEN,
    '59408-5': VitalType.OXYGEN,
    '9279-1': VitalType.RESPIRATORY,
}

_VITAL_KEYWORDS: Tuple[Tuple[str, VitalType], ...] = (
    ('blood pressure', VitalType.BLOOD_PRESSURE),
    ('systolic', VitalType.BLOOD_PRESSURE),
    ('diastolic', VitalType.BLOOD_PRESSURE),
    ('heart rate', VitalType.HEART_RATE),
    ('pulse', VitalType.HEART_RATE),
    ('temperature', VitalType.TEMPERATURE),
    ('body mass', VitalType.BMI),
    ('bmi', VitalType.BMI),
    ('weight', VitalType.WEIGHT),
    ('height', VitalType.HEIGHT),
    ('glucose', VitalType.GLUCOSE),
    ('oxygen', VitalType.OXYGEN),
    ('spo2', VitalType.OXYGEN),
    ('respiratory', VitalType.RESPIRATORY),
    ('respiration', VitalType.RESPIRATORY),
)

VITAL_DISPLAY_NAMES: Dict[VitalType, str] = {
    VitalType.BLOOD_PRESSURE: 'Blood Pressure',
    VitalType.HEART_RATE: 'Heart Rate',
    VitalType.TEMPERATURE: 'Temperature',
    VitalType.WEIGHT: 'Weight',
    VitalType.BMI: 'BMI',
    VitalType.HEIGHT: 'Height',
    VitalType.GLUCOSE: 'Blood Glucose',
    VitalType.OXYGEN: 'Oxygen Saturation',
    VitalType.RESPIRATORY: 'Respiratory Rate',
}


def classify_vital(resource: RawRecord, extra_text: Optional[str] = None) -> VitalType:
    code = resource.get('code')
    for c in concept_codes(code):
        if c in _VITAL_CODES:
            return _VITAL_CODES[c]
    for comp in resource.get('component') or []:
        if not isinstance(comp, dict):
            continue
        for c in concept_codes(comp.get('code')):
            if c in _VITAL_CODES:
                return _VITAL_CODES[c]
    texts = concept_texts(code)
    if extra_text:
        texts.append(extra_text)
    haystack = ' '.join(texts).lower()
    for keyword, vital_type in _VITAL_KEYWORDS:
        if keyword in haystack:
            return vital_type
    return VitalType.OTHER


def _sample_for(record: RawRecord) -> Optional[VitalSignSample]:
    env = open_envelope(record)
    kind, _type_name = resolve_kind(env)
    if kind is not ResourceKind.OBSERVATION:
        return None
    res = env.resource
    value = format_observation_value(res)
    if not value:
        return None
    vital_type = classify_vital(res, env.sort_title)
    if vital_type is VitalType.OTHER:
        # unclassified observations only count when flagged as vital signs
        if categorize(kind, res) is not Category.VITAL_SIGNS:
            return None
        display = env.sort_title or concept_display(res.get('code')) or 'Other'
    else:
        display = VITAL_DISPLAY_NAMES[vital_type]
    formatted, observed_at = format_display_date(resolve_raw_date(env))
    return VitalSignSample(
        vital_type=vital_type,
        display_name=display,
        value=value,
        observed_at=observed_at,
        formatted_date=formatted,
    )


def _newer(candidate: VitalSignSample, current: VitalSignSample) -> bool:
    if candidate.observed_at is None:
        return False
    if current.observed_at is None:
        return True
    return candidate.observed_at > current.observed_at


def reduce_vitals(records: Iterable[RawRecord]) -> List[VitalSignSample]:
    """Keep the most recent sample per vital type, sorted by display name.

    A sample only displaces the stored one when its timestamp is strictly
    greater; undated samples never displace anything but do fill an empty slot.
    """
    slots: Dict[VitalType, VitalSignSample] = {}
    for rec in records:
        if not isinstance(rec, dict):
            continue
        sample = _sample_for(rec)
        if sample is None:
            continue
        current = slots.get(sample.vital_type)
        if current is None or _newer(sample, current):
            slots[sample.vital_type] = sample
    return sorted(slots.values(), key=lambda s: s.display_name.lower())
