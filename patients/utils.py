import hashlib
import logging
from datetime import date, datetime
from typing import Optional, Tuple

from dateutil import parser as date_parser
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from run_engine.exceptions import PersistenceError, ValidationError
from .models import OrganizationPatient, Patient

logger = logging.getLogger(__name__)

MINOR_AGE = 18


# ============================================================================
# NORMALIZATION & HASHING
# ============================================================================

def normalize_phone_digits(phone) -> str:
    """Digits only, without a leading US country code, capped at 10 digits."""
    digits = ''.join(ch for ch in str(phone or '') if ch.isdigit())
    if len(digits) == 11 and digits.startswith('1'):
        digits = digits[1:]
    return digits[:10]


def parse_dob(dob) -> Optional[date]:
    if dob is None or dob == '':
        return None
    if isinstance(dob, datetime):
        return dob.date()
    if isinstance(dob, date):
        return dob

    value = str(dob).strip()
    for fmt in ('%Y-%m-%d', '%m/%d/%Y'):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    try:
        return date_parser.parse(value).date()
    except (ValueError, OverflowError):
        return None


def _dob_digits(dob) -> str:
    parsed = parse_dob(dob)
    raw = parsed.isoformat() if parsed else str(dob or '')
    return ''.join(ch for ch in raw if ch.isdigit())


def generate_patient_hash(first_name, last_name, dob, phone) -> str:
    first = str(first_name or '').lower().strip()
    last = str(last_name or '').lower().strip()
    hash_input = f"{normalize_phone_digits(phone)}-{_dob_digits(dob)}-{first[:3]}-{last}"
    return hashlib.sha256(hash_input.encode('utf-8')).hexdigest()


def generate_secondary_hash(last_name, dob, phone) -> str:
    last = str(last_name or '').lower().strip()
    last_four = normalize_phone_digits(phone)[-4:]
    return hashlib.sha256(f"{last}-{_dob_digits(dob)}-{last_four}".encode('utf-8')).hexdigest()


def calculate_age(dob: date, today: Optional[date] = None) -> int:
    today = today or timezone.localdate()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


# ============================================================================
# LOOKUP
# ============================================================================

def _lookup(first_name, last_name, dob, phone) -> Tuple[Optional[Patient], bool]:
    patient_hash = generate_patient_hash(first_name, last_name, dob, phone)
    patient = Patient.objects.filter(patient_hash=patient_hash).first()
    if patient:
        return patient, True

    # Household members share a phone; only the same phone and DOB is the same person.
    digits = normalize_phone_digits(phone)
    parsed_dob = parse_dob(dob)
    if not digits or parsed_dob is None:
        return None, False
    patient = Patient.objects.filter(normalized_phone=digits, dob=parsed_dob).order_by('id').first()
    return patient, False


def lookup_patient(first_name, last_name, dob, phone) -> Optional[Patient]:
    """Read-only lookup by content hash, falling back to phone + date of birth."""
    patient, _ = _lookup(first_name, last_name, dob, phone)
    return patient


def ensure_organization_link(patient, org_id, emr_id=None):
    link, created = OrganizationPatient.objects.get_or_create(
        organization_id=org_id,
        patient=patient,
        defaults={'emr_id_in_org': emr_id or '', 'is_active': True},
    )
    if not created and emr_id and link.emr_id_in_org != emr_id:
        link.emr_id_in_org = emr_id
        link.save(update_fields=['emr_id_in_org', 'updated_at'])
    return link


# ============================================================================
# FIND OR CREATE
# ============================================================================

def find_or_create_patient(first_name, last_name, dob, phone, org_id, emr_id=None) -> Tuple[int, bool]:
    """
    Resolve a contact to a canonical Patient id.

    Returns (patient_id, is_new). Concurrent calls for the same identity are
    settled by the unique patient_hash: the loser of the insert race re-reads
    the winner's row.

    Raises ValidationError for an unparseable DOB on a new patient and
    PersistenceError when storage fails.
    """
    try:
        existing, exact = _lookup(first_name, last_name, dob, phone)
        if existing:
            if exact:
                _refresh_existing_patient(existing, first_name, last_name, phone)
            ensure_organization_link(existing, org_id, emr_id)
            return existing.id, False

        parsed_dob = parse_dob(dob)
        if parsed_dob is None:
            raise ValidationError(f"Invalid date of birth: {dob}")

        patient_hash = generate_patient_hash(first_name, last_name, dob, phone)
        try:
            with transaction.atomic():
                patient, created = Patient.objects.get_or_create(
                    patient_hash=patient_hash,
                    defaults={
                        'secondary_hash': generate_secondary_hash(last_name, dob, phone),
                        'normalized_phone': normalize_phone_digits(phone),
                        'first_name': str(first_name or '').strip(),
                        'last_name': str(last_name or '').strip(),
                        'dob': parsed_dob,
                        'is_minor': calculate_age(parsed_dob) < MINOR_AGE,
                        'primary_phone': str(phone or '').strip(),
                    },
                )
        except IntegrityError:
            patient = Patient.objects.get(patient_hash=patient_hash)
            created = False

        ensure_organization_link(patient, org_id, emr_id)
        if created:
            logger.info(f"Created patient {patient.id} for org {org_id}")
        return patient.id, created

    except DatabaseError as e:
        logger.error(f"Error resolving patient for org {org_id}: {e}")
        raise PersistenceError(f"Failed to resolve patient: {e}") from e


def _refresh_existing_patient(patient, first_name, last_name, phone):
    update_fields = []
    first = str(first_name or '').strip()
    last = str(last_name or '').strip()
    phone_value = str(phone or '').strip()

    if first and patient.first_name != first:
        patient.first_name = first
        update_fields.append('first_name')
    if last and patient.last_name != last:
        patient.last_name = last
        update_fields.append('last_name')
    if phone_value and normalize_phone_digits(phone_value) != normalize_phone_digits(patient.primary_phone):
        patient.secondary_phone = patient.primary_phone
        patient.primary_phone = phone_value
        patient.normalized_phone = normalize_phone_digits(phone_value)
        update_fields.extend(['secondary_phone', 'primary_phone', 'normalized_phone'])

    if update_fields:
        update_fields.append('updated_at')
        patient.save(update_fields=update_fields)
