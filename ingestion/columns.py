import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .schema import FieldSchema, FieldSpec, ValidationRules

DEFAULT_PATIENT_FIELDS = [
    FieldSpec(key='firstName', label='First Name',
              possible_columns=['first name', 'firstname', 'first'], transform='text', required=True),
    FieldSpec(key='lastName', label='Last Name',
              possible_columns=['last name', 'lastname', 'last'], transform='text', required=True),
    FieldSpec(key='dob', label='Date of Birth',
              possible_columns=['dob', 'date of birth', 'birth date'], transform='short_date', required=True),
    FieldSpec(key='primaryPhone', label='Phone Number',
              possible_columns=['phone', 'phone number', 'primaryphone', 'primary phone', 'mobile', 'cell'],
              transform='phone', required=True),
]


def normalize_header(value) -> str:
    return re.sub(r'[^a-z0-9]', '', str(value or '').lower())


def to_field_key(header) -> str:
    return re.sub(r'[^a-z0-9]+', '_', str(header).lower()).strip('_')


def find_matching_column(headers: Iterable[str], possible_columns: Iterable[str]) -> Optional[str]:
    """
    Pick the header that best matches any alias.

    1. exact match on normalized text, or case-insensitive match on the raw text
    2. every alias word longer than 2 chars appears in the normalized header
    3. normalized alias (longer than 3 chars) contained in the normalized header
    """
    headers = list(headers)
    aliases = [a for a in possible_columns if a]

    for alias in aliases:
        normalized_alias = normalize_header(alias)
        for header in headers:
            if normalize_header(header) == normalized_alias or header.strip().lower() == alias.strip().lower():
                return header

    for alias in aliases:
        words = [normalize_header(w) for w in alias.lower().split()]
        words = [w for w in words if len(w) > 2]
        if not words:
            continue
        for header in headers:
            normalized = normalize_header(header)
            if all(word in normalized for word in words):
                return header

    for alias in aliases:
        normalized_alias = normalize_header(alias)
        if len(normalized_alias) <= 3:
            continue
        for header in headers:
            if normalized_alias in normalize_header(header):
                return header

    return None


def resolve_column_mappings(headers: List[str], schema: FieldSchema) -> Dict[str, str]:
    """
    Map field key -> header. Fields claim headers in schema order, patient
    fields first, and a claimed header is not offered to later fields.
    """
    mappings = {}
    available = list(headers)
    for spec in schema.all_fields():
        aliases = spec.possible_columns or [spec.label, spec.key]
        header = find_matching_column(available, aliases)
        if header is not None:
            mappings[spec.key] = header
            available.remove(header)
    return mappings


def build_auto_schema(headers: List[str]) -> FieldSchema:
    """
    Synthesize a schema when the campaign has none: well-known contact headers
    become patient fields, every other header becomes an optional campaign field.
    """
    patient_fields = [replace(spec) for spec in DEFAULT_PATIENT_FIELDS]
    claimed = set(resolve_column_mappings(headers, FieldSchema(patient_fields=patient_fields)).values())

    campaign_fields = []
    seen_keys = {spec.key for spec in patient_fields}
    for header in headers:
        if header in claimed:
            continue
        key = to_field_key(header)
        if not key or key in seen_keys:
            continue
        seen_keys.add(key)
        campaign_fields.append(FieldSpec(
            key=key,
            label=header,
            possible_columns=[header],
            transform='text',
            required=False,
        ))

    return FieldSchema(
        patient_fields=patient_fields,
        campaign_fields=campaign_fields,
        validation=ValidationRules(require_valid_phone=True, require_valid_dob=True, require_name=True),
    )
