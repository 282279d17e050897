"""
Unit tests for the ingestion package

Tests cover:
- Header matching and column claiming
- Auto-detected schemas
- Value transforms and two-digit-year resolution
- CSV / Excel parsing
- End-to-end ingestion with validation and deduplication
"""

import io
from datetime import date
from unittest.mock import patch

import openpyxl
import pytest

from dialer.models import Organization
from ingestion.columns import build_auto_schema, find_matching_column, resolve_column_mappings
from ingestion.parsers import parse_file_content
from ingestion.pipeline import ingest
from ingestion.schema import FieldSchema, FieldSpec
from ingestion.transforms import (
    TwoDigitYearPolicy, transform_long_date, transform_phone, transform_provider, transform_short_date,
    transform_time, transform_value,
)
from patients.models import Patient
from run_engine.exceptions import ParseError, ValidationError


SAMPLE_CSV = (
    "First Name,Last Name,DOB,Phone,Appointment Date\n"
    "Jane,Doe,01/15/46,(555) 123-4567,03/10/2025\n"
    "John,Smith,1980-02-29,555-987-6543,03/11/2025\n"
    "Bad,Row,01/01/1990,123,03/12/2025\n"
).encode('utf-8')


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def policy():
    """Two-digit-year policy pinned to mid 2025"""
    return TwoDigitYearPolicy(max_age=80, today=date(2025, 6, 1))


@pytest.fixture
def organization(db):
    return Organization.objects.create(name='Clinic', phone='+15550000000')


# ============================================================================
# TEST: find_matching_column / resolve_column_mappings
# ============================================================================

class TestColumnMatching:

    def test_exact_match_ignores_case_and_punctuation(self):
        """Test normalized exact match"""
        assert find_matching_column(['Patient_ID', 'FIRST-NAME'], ['first name']) == 'FIRST-NAME'

    def test_word_match(self):
        """Test every alias word appearing in the header"""
        assert find_matching_column(['Patient First Name', 'Other'], ['first name']) == 'Patient First Name'

    def test_substring_match(self):
        """Test normalized alias contained in header"""
        assert find_matching_column(['Home Phone1'], ['phone']) == 'Home Phone1'

    def test_no_match(self):
        """Test None when nothing matches"""
        assert find_matching_column(['Foo', 'Bar'], ['phone']) is None

    def test_claimed_header_not_reused(self):
        """Test a header claimed by one field is not offered to the next"""
        schema = FieldSchema(patient_fields=[
            FieldSpec(key='primaryPhone', possible_columns=['phone']),
            FieldSpec(key='secondaryPhone', possible_columns=['phone', 'alt phone']),
        ])

        mappings = resolve_column_mappings(['Phone', 'Alt Phone'], schema)

        assert mappings == {'primaryPhone': 'Phone', 'secondaryPhone': 'Alt Phone'}


# ============================================================================
# TEST: build_auto_schema
# ============================================================================

class TestBuildAutoSchema:

    def test_known_and_extra_headers(self):
        """Test well-known headers become patient fields and the rest campaign fields"""
        schema = build_auto_schema(['First Name', 'Last Name', 'DOB', 'Phone', 'Appointment Date'])

        assert [f.key for f in schema.patient_fields] == ['firstName', 'lastName', 'dob', 'primaryPhone']
        assert [f.key for f in schema.campaign_fields] == ['appointment_date']
        assert schema.campaign_fields[0].required is False
        assert schema.validation.require_valid_phone is True

    def test_from_config_accepts_camel_case(self):
        """Test campaign config parsing"""
        schema = FieldSchema.from_config({
            'patient': {
                'fields': [{'key': 'firstName', 'possibleColumns': ['given'], 'transform': 'text',
                            'required': True}],
                'validation': {'requireName': True},
            },
            'campaign': {'fields': [{'key': 'doctor', 'transform': 'provider-name'}, {'label': 'no key'}]},
        })

        assert schema.patient_fields[0].possible_columns == ['given']
        assert schema.validation.require_name is True
        assert schema.validation.require_valid_phone is False
        assert len(schema.campaign_fields) == 1
        assert schema.campaign_fields[0].transform == 'provider'

    def test_from_config_tolerates_garbage(self):
        """Test malformed config yields an empty schema"""
        assert FieldSchema.from_config('nope').is_empty()
        assert FieldSchema.from_config({'patient': []}).is_empty()


# ============================================================================
# TEST: transforms
# ============================================================================

class TestTwoDigitYearPolicy:

    def test_year_above_current_goes_to_previous_century(self, policy):
        """Test 01/15/46 in 2025 resolves to 1946"""
        assert transform_short_date('01/15/46', policy) == '1946-01-15'

    def test_recent_year_stays_in_current_century(self, policy):
        """Test 01/15/05 resolves to 2005 while the age is within max_age"""
        assert transform_short_date('01/15/05', policy) == '2005-01-15'

    def test_small_max_age_pushes_back_a_century(self):
        """Test 01/15/05 resolves to 1905 when the implied age exceeds max_age"""
        policy = TwoDigitYearPolicy(max_age=10, today=date(2025, 6, 1))

        assert transform_short_date('01/15/05', policy) == '1905-01-15'

    def test_future_date_moves_back(self, policy):
        """Test a current-year date later than today lands in the previous century"""
        assert transform_short_date('12/31/25', policy) == '1925-12-31'

    def test_invalid_calendar_date_returns_text(self, policy):
        """Test 02/30/80 is left untouched"""
        assert transform_short_date('02/30/80', policy) == '02/30/80'


class TestTransforms:

    def test_phone_formats(self):
        """Test E.164-style output"""
        assert transform_phone('(555) 123-4567') == '+15551234567'
        assert transform_phone('1-555-123-4567') == '+15551234567'
        assert transform_phone('n/a') == ''

    def test_excel_serial_date(self, policy):
        """Test Excel serial numbers convert from the 1899-12-30 epoch"""
        assert transform_short_date(45658, policy) == '2025-01-01'
        assert transform_short_date('45658', policy) == '2025-01-01'

    def test_four_digit_year(self, policy):
        """Test MM/DD/YYYY"""
        assert transform_short_date('3/4/1975', policy) == '1975-03-04'

    def test_long_date_with_weekday(self):
        """Test weekday prefix is stripped"""
        assert transform_long_date('Monday, March 3, 2025') == '2025-03-03'

    def test_time_values(self):
        """Test 12h text and Excel day fractions"""
        assert transform_time('2:30 PM') == '14:30'
        assert transform_time('12:05 am') == '00:05'
        assert transform_time(0.5) == '12:00'

    def test_provider_names(self):
        """Test title casing with short acronyms preserved"""
        assert transform_provider('jane SMITH MD') == 'Jane Smith MD'

    def test_blank_values(self):
        """Test blank input yields empty string for every transform"""
        for kind in ('text', 'phone', 'short_date', 'long_date', 'time', 'provider'):
            assert transform_value('   ', kind) == ''
            assert transform_value(None, kind) == ''


# ============================================================================
# TEST: parse_file_content
# ============================================================================

class TestParseFileContent:

    def test_csv_with_bom_and_semicolons(self):
        """Test BOM stripping, delimiter guessing and blank line skipping"""
        content = '\ufeffName;Phone\n\nAnn ; 5551234567\n;\n'.encode('utf-8')

        headers, records = parse_file_content(content, 'list.CSV')

        assert headers == ['Name', 'Phone']
        assert records == [{'Name': 'Ann', 'Phone': '5551234567'}]

    def test_quoted_cell_spanning_blank_line(self):
        """Test a quoted multi-line cell keeps its blank line and its row"""
        content = (
            'Name,Notes,Phone\r\n'
            'Ann,"Call after lunch\r\n\r\nAsk for Bob",5551234567\r\n'
            '\r\n'
            'Ben,,5559876543\r\n'
        ).encode('utf-8')

        headers, records = parse_file_content(content, 'list.csv')

        assert headers == ['Name', 'Notes', 'Phone']
        assert records == [
            {'Name': 'Ann', 'Notes': 'Call after lunch\r\n\r\nAsk for Bob', 'Phone': '5551234567'},
            {'Name': 'Ben', 'Notes': '', 'Phone': '5559876543'},
        ]

    def test_header_only_csv(self):
        """Test ParseError when no data rows exist"""
        with pytest.raises(ParseError):
            parse_file_content(b'Name,Phone\n', 'list.csv')

    def test_empty_file(self):
        """Test ParseError on empty input"""
        with pytest.raises(ParseError):
            parse_file_content(b'', 'list.csv')

    def test_excel(self):
        """Test first worksheet is read and whole floats become ints"""
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.append(['First Name', 'Phone'])
        sheet.append(['Ann', 5551234567.0])
        sheet.append([None, None])
        buffer = io.BytesIO()
        workbook.save(buffer)

        headers, records = parse_file_content(buffer.getvalue(), 'list.xlsx')

        assert headers == ['First Name', 'Phone']
        assert records == [{'First Name': 'Ann', 'Phone': 5551234567}]

    def test_corrupt_excel(self):
        """Test unreadable spreadsheets raise ParseError"""
        with pytest.raises(ParseError):
            parse_file_content(b'not a zip file', 'list.xlsx')


# ============================================================================
# TEST: ingest (end to end)
# ============================================================================

@pytest.mark.django_db
class TestIngest:

    def test_three_row_csv(self, organization, policy):
        """Test two valid rows and one invalid row with patients created"""
        result = ingest(SAMPLE_CSV, 'upload.csv', org_id=organization.id, year_policy=policy)

        assert result.stats.total_rows == 3
        assert result.stats.valid_rows == 2
        assert result.stats.invalid_rows == 1
        assert result.stats.unique_patients == 2
        assert result.stats.new_patients == 2
        assert Patient.objects.count() == 2

        first = result.valid_rows[0]
        assert first['variables'] == {
            'firstName': 'Jane',
            'lastName': 'Doe',
            'dob': '1946-01-15',
            'primaryPhone': '+15551234567',
            'appointment_date': '03/10/2025',
        }
        assert first['patient_id'] == Patient.objects.get(last_name='Doe').id

        invalid = result.invalid_rows[0]
        assert invalid['row'] == 4
        assert 'Invalid phone number' in invalid['error']
        assert result.errors[0].startswith('Row 4:')
        assert result.column_mappings['primaryPhone'] == 'Phone'
        assert len(result.sample_rows) == 3

    def test_duplicates_share_patient(self, organization, policy):
        """Test repeated contacts count as duplicates of one patient"""
        content = (
            "First Name,Last Name,DOB,Phone\n"
            "Jane,Doe,01/15/46,5551234567\n"
            "JANE,doe,1946-01-15,+1 555 123 4567\n"
        ).encode('utf-8')

        result = ingest(content, 'dupes.csv', org_id=organization.id, year_policy=policy)

        assert result.stats.valid_rows == 2
        assert result.stats.unique_patients == 1
        assert result.stats.duplicate_patients == 1
        assert result.valid_rows[0]['patient_id'] == result.valid_rows[1]['patient_id']
        assert Patient.objects.count() == 1

    def test_household_sharing_a_phone(self, organization, policy):
        """Test relatives on one phone number become separate patients"""
        content = (
            "First Name,Last Name,DOB,Phone\n"
            "Jane,Doe,01/15/1946,5551234567\n"
            "John,Doe,06/02/1975,5551234567\n"
        ).encode('utf-8')

        result = ingest(content, 'household.csv', org_id=organization.id, year_policy=policy)

        assert result.stats.valid_rows == 2
        assert result.stats.unique_patients == 2
        assert result.stats.duplicate_patients == 0
        assert result.valid_rows[0]['patient_id'] != result.valid_rows[1]['patient_id']
        assert sorted(Patient.objects.values_list('first_name', flat=True)) == ['Jane', 'John']

    def test_validate_only_has_no_side_effects(self, policy):
        """Test validate-only mode looks patients up without creating any"""
        result = ingest(SAMPLE_CSV, 'upload.csv', validate_only=True, year_policy=policy)

        assert result.stats.valid_rows == 2
        assert result.stats.new_patients == 2
        assert all(row['patient_id'] is None for row in result.valid_rows)
        assert Patient.objects.count() == 0

    def test_missing_required_field(self, organization, policy):
        """Test a blank required cell invalidates the row"""
        content = "First Name,Last Name,DOB,Phone\n,Doe,01/15/46,5551234567\n".encode('utf-8')

        result = ingest(content, 'missing.csv', org_id=organization.id, year_policy=policy)

        assert result.stats.invalid_rows == 1
        assert 'Missing required patient fields: First Name' in result.invalid_rows[0]['error']

    def test_org_required_outside_validate_only(self):
        """Test ValidationError without an organization"""
        with pytest.raises(ValidationError):
            ingest(SAMPLE_CSV, 'upload.csv')

    def test_patient_resolution_failure_keeps_row(self, organization, policy):
        """Test a resolver error leaves the row valid without a patient"""
        with patch('ingestion.pipeline.find_or_create_patient', side_effect=ValidationError('boom')):
            result = ingest(SAMPLE_CSV, 'upload.csv', org_id=organization.id, year_policy=policy)

        assert result.stats.valid_rows == 2
        assert result.valid_rows[0]['patient_id'] is None
