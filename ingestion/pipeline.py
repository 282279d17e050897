"""
Row ingestion: uploaded file -> validated, deduplicated row payloads.

`ingest` never aborts on a bad record; each rejected record is reported in
`invalid_rows` with the reason and whatever could still be extracted. Valid
records are resolved to patients through the patient resolver (or only looked
up, in validate-only mode) and returned ready to be stored as Rows.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Optional

from patients.utils import find_or_create_patient, generate_patient_hash, lookup_patient, parse_dob
from run_engine.exceptions import RunEngineError, ValidationError
from .columns import build_auto_schema, resolve_column_mappings
from .parsers import parse_file_content
from .schema import FieldSchema
from .transforms import TwoDigitYearPolicy, transform_value

logger = logging.getLogger(__name__)

SAMPLE_ROW_LIMIT = 5
MIN_PHONE_DIGITS = 7


@dataclass
class IngestionStats:
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    unique_patients: int = 0
    duplicate_patients: int = 0
    new_patients: int = 0
    existing_patients: int = 0


@dataclass
class IngestionResult:
    valid_rows: List[Dict] = field(default_factory=list)
    invalid_rows: List[Dict] = field(default_factory=list)
    stats: IngestionStats = field(default_factory=IngestionStats)
    column_mappings: Dict[str, str] = field(default_factory=dict)
    matched_columns: List[str] = field(default_factory=list)
    unmatched_columns: List[str] = field(default_factory=list)
    sample_rows: List[Dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _jsonable(record):
    result = {}
    for key, value in record.items():
        if isinstance(value, (datetime, date, time)):
            result[key] = value.isoformat()
        elif value is None or isinstance(value, (str, int, float, bool)):
            result[key] = value
        else:
            result[key] = str(value)
    return result


def _extract(record, specs, mappings, policy):
    values, missing = {}, []
    for spec in specs:
        header = mappings.get(spec.key)
        raw = record.get(header) if header else None
        value = transform_value(raw, spec.transform, policy)
        if value == '':
            if spec.required:
                missing.append(spec.label or spec.key)
            continue
        values[spec.key] = value
    return values, missing


def _validation_errors(patient_data, rules):
    errors = []
    if rules.require_name and not (patient_data.get('firstName') and patient_data.get('lastName')):
        errors.append("First and last name are required")
    if rules.require_valid_phone:
        digits = re.sub(r'\D', '', str(patient_data.get('primaryPhone', '')))
        if len(digits) < MIN_PHONE_DIGITS:
            errors.append("Invalid phone number")
    if rules.require_valid_dob:
        dob = parse_dob(patient_data.get('dob'))
        if dob is None or dob > date.today():
            errors.append("Invalid date of birth")
    return errors


def ingest(file_bytes, file_name, field_schema: Optional[FieldSchema] = None, org_id=None,
           validate_only=False, year_policy: Optional[TwoDigitYearPolicy] = None) -> IngestionResult:
    """
    Parse, map, transform, validate and deduplicate an uploaded file.

    With validate_only=True patients are only looked up, never created, so the
    call has no persistent side effects. Raises ParseError for unreadable files.
    """
    if not validate_only and org_id is None:
        raise ValidationError("org_id is required to ingest rows")

    headers, records = parse_file_content(file_bytes, file_name)
    policy = year_policy or TwoDigitYearPolicy()

    schema = field_schema
    if schema is None or schema.is_empty():
        logger.info(f"No field schema for {file_name}, auto-detecting columns")
        schema = build_auto_schema(headers)

    mappings = resolve_column_mappings(headers, schema)
    matched = [h for h in headers if h in mappings.values()]

    result = IngestionResult(
        column_mappings=mappings,
        matched_columns=matched,
        unmatched_columns=[h for h in headers if h not in matched],
        sample_rows=[_jsonable(r) for r in records[:SAMPLE_ROW_LIMIT]],
    )
    stats = result.stats
    stats.total_rows = len(records)

    if result.unmatched_columns:
        logger.info(f"Ignoring unmatched columns in {file_name}: {result.unmatched_columns}")

    seen_hashes = {}

    for index, record in enumerate(records):
        row_number = index + 2
        patient_data, missing_patient = _extract(record, schema.patient_fields, mappings, policy)
        campaign_data, missing_campaign = _extract(record, schema.campaign_fields, mappings, policy)

        problems = []
        if missing_patient:
            problems.append(f"Missing required patient fields: {', '.join(missing_patient)}")
        if missing_campaign:
            problems.append(f"Missing required campaign fields: {', '.join(missing_campaign)}")
        if not problems:
            problems.extend(_validation_errors(patient_data, schema.validation))

        if problems:
            error = '; '.join(problems)
            result.invalid_rows.append({
                'row': row_number,
                'raw_data': _jsonable(record),
                'error': error,
                'patient_data': patient_data,
                'campaign_data': campaign_data,
            })
            result.errors.append(f"Row {row_number}: {error}")
            stats.invalid_rows += 1
            continue

        first_name = patient_data.get('firstName', '')
        last_name = patient_data.get('lastName', '')
        dob = patient_data.get('dob', '')
        phone = patient_data.get('primaryPhone', '')
        patient_hash = generate_patient_hash(first_name, last_name, dob, phone)

        if patient_hash in seen_hashes:
            stats.duplicate_patients += 1
            patient_id = seen_hashes[patient_hash]
        else:
            stats.unique_patients += 1
            patient_id = _resolve_patient(
                stats, first_name, last_name, dob, phone, org_id, validate_only, row_number,
                emr_id=patient_data.get('emrId'),
            )
            seen_hashes[patient_hash] = patient_id

        result.valid_rows.append({
            'patient_id': patient_id,
            'patient_hash': patient_hash,
            'variables': {**patient_data, **campaign_data},
        })
        stats.valid_rows += 1

    logger.info(
        f"Ingested {file_name}: {stats.valid_rows} valid, {stats.invalid_rows} invalid, "
        f"{stats.duplicate_patients} duplicates"
    )
    return result


def _resolve_patient(stats, first_name, last_name, dob, phone, org_id, validate_only, row_number, emr_id=None):
    if validate_only:
        existing = lookup_patient(first_name, last_name, dob, phone)
        if existing:
            stats.existing_patients += 1
            return existing.id
        stats.new_patients += 1
        return None

    try:
        patient_id, is_new = find_or_create_patient(first_name, last_name, dob, phone, org_id, emr_id=emr_id)
    except RunEngineError as e:
        logger.warning(f"Row {row_number}: patient resolution failed, continuing without patient: {e}")
        return None

    if is_new:
        stats.new_patients += 1
    else:
        stats.existing_patients += 1
    return patient_id
