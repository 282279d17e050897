"""
Unit tests for patients/utils.py

Tests cover:
- Phone normalization and DOB parsing
- Deduplication hashes
- find_or_create_patient (create, reuse, household phones, org links)
- Error handling
"""

from datetime import date
from unittest.mock import patch

import pytest
from django.db import DatabaseError

from dialer.models import Organization
from patients.models import OrganizationPatient, Patient
from patients.utils import (
    calculate_age, find_or_create_patient, generate_patient_hash, lookup_patient, normalize_phone_digits,
    parse_dob,
)
from run_engine.exceptions import PersistenceError, ValidationError


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def organization(db):
    return Organization.objects.create(name='Clinic A')


@pytest.fixture
def other_organization(db):
    return Organization.objects.create(name='Clinic B')


# ============================================================================
# TEST: normalization & hashing
# ============================================================================

class TestNormalization:

    def test_phone_digits(self):
        """Test country code and punctuation are stripped"""
        assert normalize_phone_digits('+1 (555) 123-4567') == '5551234567'
        assert normalize_phone_digits('555.123.4567 ext 89') == '5551234567'
        assert normalize_phone_digits(None) == ''

    def test_parse_dob_formats(self):
        """Test ISO, US and free-form dates"""
        assert parse_dob('1980-02-29') == date(1980, 2, 29)
        assert parse_dob('02/29/1980') == date(1980, 2, 29)
        assert parse_dob('Feb 29 1980') == date(1980, 2, 29)
        assert parse_dob('not a date') is None
        assert parse_dob('') is None

    def test_hash_is_stable_across_formats(self):
        """Test the same person hashes identically regardless of input formatting"""
        a = generate_patient_hash('Jane', 'Doe', '1946-01-15', '+15551234567')
        b = generate_patient_hash(' JANET ', 'doe', '01/15/1946', '(555) 123-4567')

        assert a == b
        assert len(a) == 64

    def test_hash_differs_by_last_name(self):
        """Test last name is part of the identity"""
        assert generate_patient_hash('Jane', 'Doe', '1946-01-15', '5551234567') != \
            generate_patient_hash('Jane', 'Roe', '1946-01-15', '5551234567')

    def test_calculate_age(self):
        """Test birthday boundary"""
        assert calculate_age(date(2000, 6, 2), today=date(2018, 6, 1)) == 17
        assert calculate_age(date(2000, 6, 1), today=date(2018, 6, 1)) == 18


# ============================================================================
# TEST: find_or_create_patient
# ============================================================================

@pytest.mark.django_db
class TestFindOrCreatePatient:

    def test_creates_new_patient(self, organization):
        """Test a new identity creates a patient and an org link"""
        patient_id, is_new = find_or_create_patient('Jane', 'Doe', '1946-01-15', '+15551234567', organization.id,
                                                    emr_id='EMR-1')

        patient = Patient.objects.get(id=patient_id)
        assert is_new is True
        assert patient.normalized_phone == '5551234567'
        assert patient.dob == date(1946, 1, 15)
        assert patient.is_minor is False
        link = OrganizationPatient.objects.get(patient=patient, organization=organization)
        assert link.emr_id_in_org == 'EMR-1'

    def test_minor_flag(self, organization):
        """Test minors are flagged at creation"""
        today = date.today()
        dob = date(today.year - 10, 1, 1).isoformat()

        patient_id, _ = find_or_create_patient('Tim', 'Kid', dob, '5550001111', organization.id)

        assert Patient.objects.get(id=patient_id).is_minor is True

    def test_reuses_existing_patient(self, organization):
        """Test a second call with the same identity returns the same id"""
        first_id, _ = find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)
        second_id, is_new = find_or_create_patient('Jane', 'Doe', '01/15/1946', '+1 555 123 4567', organization.id)

        assert second_id == first_id
        assert is_new is False
        assert Patient.objects.count() == 1

    def test_links_patient_to_second_org(self, organization, other_organization):
        """Test one patient is shared across organizations"""
        first_id, _ = find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)
        second_id, _ = find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', other_organization.id)

        assert first_id == second_id
        assert OrganizationPatient.objects.filter(patient_id=first_id).count() == 2

    def test_phone_and_dob_fallback_keeps_names(self, organization):
        """Test a phone + DOB match reuses the patient without renaming it"""
        first_id, _ = find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)
        second_id, is_new = find_or_create_patient('Janie', 'Doe', '01/15/1946', '(555) 123-4567', organization.id)

        assert second_id == first_id
        assert is_new is False
        assert Patient.objects.get(id=first_id).first_name == 'Jane'

    def test_household_members_stay_distinct(self, organization):
        """Test relatives sharing a phone and last name resolve to separate patients"""
        mother_id, _ = find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)
        son_id, is_new = find_or_create_patient('John', 'Doe', '1975-06-02', '5551234567', organization.id)

        assert son_id != mother_id
        assert is_new is True
        assert Patient.objects.get(id=mother_id).first_name == 'Jane'
        assert Patient.objects.get(id=son_id).first_name == 'John'

    def test_lookup_without_dob_match_finds_nothing(self, organization):
        """Test the phone fallback needs a matching date of birth"""
        find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)

        assert lookup_patient('John', 'Doe', '1975-06-02', '5551234567') is None
        assert lookup_patient('John', 'Doe', 'unknown', '5551234567') is None

    def test_lookup_is_read_only(self, organization):
        """Test lookup_patient never creates"""
        assert lookup_patient('Jane', 'Doe', '1946-01-15', '5551234567') is None
        assert Patient.objects.count() == 0

    def test_invalid_dob(self, organization):
        """Test ValidationError for an unparseable DOB"""
        with pytest.raises(ValidationError):
            find_or_create_patient('Jane', 'Doe', 'sometime', '5551234567', organization.id)

    def test_database_error(self, organization):
        """Test storage failures surface as PersistenceError"""
        with patch('patients.utils._lookup', side_effect=DatabaseError('db down')):
            with pytest.raises(PersistenceError):
                find_or_create_patient('Jane', 'Doe', '1946-01-15', '5551234567', organization.id)
