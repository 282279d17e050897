"""
Unit tests for the dialer app

Tests cover:
- Office hours and patient calling hours gates
- Row claiming, capacity and run completion
- Consistency monitor (stuck rows, missed webhooks)
- RunScheduler batch adaptation, row dispatch and the full dispatch loop
- Inbound run operations (create, upload, start, pause, schedule)
- Celery tasks and run lock handling
- Run API endpoints
"""

from datetime import datetime, timedelta
from unittest.mock import Mock, patch
from zoneinfo import ZoneInfo

import httpx
import pytest
import orjson as json
from django.utils import timezone

from dialer.models import Call, Organization, Row, Run
from dialer.monitor import (
    STALE_CALL_ERROR, STUCK_RESET_ERROR, WEBHOOK_FIX_REASON, reconcile_missed_webhooks, reset_stuck_rows,
    run_consistency_checks,
)
from dialer.scheduler import RunScheduler
from dialer.services import (
    activate_scheduled_run, create_run, ingest_run_file, pause_run, schedule_run, start_run,
)
from dialer.tasks import check_scheduled_runs, get_scheduler, process_run, sweep_running_runs
from dialer.utils import (
    build_call_variables, claim_row, complete_run, count_rows_by_status, fail_run, get_available_capacity,
    is_within_office_hours, is_within_patient_hours, pause_for_office_hours, resume_from_office_hours,
)
from events.notifier import MetricDebouncer, record_run_metrics
from events.utils import apply_call_status_update
from run_engine.exceptions import ConcurrencyConflict, ProviderError
from run_engine.provider import CallProviderClient

EASTERN = ZoneInfo('America/New_York')
WEEKDAY_HOURS = {'monday': {'start': '09:00', 'end': '17:00'}}

SAMPLE_CSV = (
    "First Name,Last Name,DOB,Phone\n"
    "Jane,Doe,01/15/1946,(555) 123-4567\n"
    "John,Smith,02/29/1980,555-987-6543\n"
    "Bad,Row,01/01/1990,123\n"
).encode('utf-8')


class FakeClock:
    """Monotonic clock that only moves when the scheduler sleeps"""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = None

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep()


class FakeProvider:
    def __init__(self, clock, error=None):
        self.clock = clock
        self.error = error
        self.calls = []

    def create_phone_call(self, to_number, from_number, agent_id, variables, metadata):
        self.calls.append({'at': self.clock(), 'to_number': to_number, 'agent_id': agent_id,
                           'variables': variables, 'metadata': metadata})
        if self.error:
            raise self.error
        return f"call_{len(self.calls)}"


def deliver_webhooks(org_id):
    """End every pending call, the way provider webhooks would during a wait"""
    for provider_call_id in Call.objects.filter(status='pending').values_list('provider_call_id', flat=True):
        apply_call_status_update(org_id, {
            'event': 'call_ended',
            'call': {'call_id': provider_call_id, 'call_status': 'ended', 'disconnection_reason': 'user_hangup'},
        })


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    """Scheduler wired to a fake clock/sleep and a fake provider"""
    provider = FakeProvider(clock)
    return RunScheduler(
        provider=provider,
        debouncer=MetricDebouncer(window=0.5, clock=clock),
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def mock_process_run():
    with patch('dialer.services.process_run') as mock:
        yield mock


@pytest.fixture
def mock_activate_task():
    with patch('dialer.services.activate_scheduled_run_task') as mock:
        yield mock


# ============================================================================
# TEST: is_within_office_hours
# ============================================================================

class TestOfficeHours:

    def _at(self, hour, minute, day=3):
        # 2025-03-03 is a Monday
        return datetime(2025, 3, day, hour, minute, tzinfo=EASTERN)

    def test_inclusive_boundaries(self):
        """Test 09:00 and 17:00 are inside, 08:59 and 17:01 are outside"""
        org = Organization(timezone='America/New_York', office_hours=WEEKDAY_HOURS)

        assert is_within_office_hours(org, self._at(8, 59)) is False
        assert is_within_office_hours(org, self._at(9, 0)) is True
        assert is_within_office_hours(org, self._at(17, 0)) is True
        assert is_within_office_hours(org, self._at(17, 1)) is False

    def test_uses_org_timezone(self):
        """Test the check happens in the organization's timezone"""
        org = Organization(timezone='America/Los_Angeles', office_hours=WEEKDAY_HOURS)

        # 09:30 Eastern is 06:30 Pacific
        assert is_within_office_hours(org, self._at(9, 30)) is False
        assert is_within_office_hours(org, self._at(12, 0)) is True

    def test_missing_day_is_closed(self):
        """Test a weekday absent from the configuration is closed"""
        org = Organization(timezone='America/New_York', office_hours=WEEKDAY_HOURS)

        assert is_within_office_hours(org, self._at(12, 0, day=4)) is False

    def test_no_configuration_is_open(self):
        """Test organizations without office hours are always open"""
        org = Organization(timezone='America/New_York', office_hours={})

        assert is_within_office_hours(org, self._at(3, 0)) is True

    def test_never_and_always_windows(self):
        """Test 00:00-00:00 never opens and 00:00-23:59 never closes"""
        never = Organization(timezone='America/New_York',
                             office_hours={'monday': {'start': '00:00', 'end': '00:00'}})
        always = Organization(timezone='America/New_York',
                              office_hours={'monday': {'start': '00:00', 'end': '23:59'}})
        late = datetime(2025, 3, 3, 23, 59, 30, tzinfo=EASTERN)

        assert is_within_office_hours(never, self._at(0, 0)) is False
        assert is_within_office_hours(always, late) is True


class TestPatientHours:

    def test_patient_timezone_window(self):
        """Test the window is checked in the patient's timezone with an exclusive end"""
        org = Organization(timezone='America/New_York')
        run = Run(config={'call_start_hour': 8, 'call_end_hour': 20})
        variables = {'timezone': 'America/Los_Angeles'}
        utc = ZoneInfo('UTC')

        assert is_within_patient_hours(run, org, variables, datetime(2025, 3, 3, 16, 0, tzinfo=utc)) is True
        assert is_within_patient_hours(run, org, variables, datetime(2025, 3, 3, 15, 59, tzinfo=utc)) is False
        assert is_within_patient_hours(run, org, variables, datetime(2025, 3, 4, 4, 0, tzinfo=utc)) is False

    def test_falls_back_to_org_timezone(self):
        """Test rows without a timezone use the organization's"""
        org = Organization(timezone='America/New_York')
        run = Run(config={})

        assert is_within_patient_hours(run, org, {}, datetime(2025, 3, 3, 8, 0, tzinfo=EASTERN)) is True
        assert is_within_patient_hours(run, org, {}, datetime(2025, 3, 3, 7, 59, tzinfo=EASTERN)) is False


# ============================================================================
# TEST: claim_row / capacity / completion
# ============================================================================

@pytest.mark.django_db
class TestClaimRow:

    def test_single_claim_winner(self, make_row):
        """Test exactly one of two claims on the same row succeeds"""
        row = make_row()
        outcomes = []
        for _ in range(2):
            try:
                claim_row(row.id)
                outcomes.append('won')
            except ConcurrencyConflict:
                outcomes.append('lost')

        row.refresh_from_db()
        assert outcomes == ['won', 'lost']
        assert row.status == 'calling'

    def test_claim_non_pending_row(self, make_row):
        """Test completed rows cannot be claimed"""
        row = make_row(status='completed')

        with pytest.raises(ConcurrencyConflict):
            claim_row(row.id)


@pytest.mark.django_db
class TestCapacity:

    def test_capacity_is_min_of_org_and_run(self, organization, run, make_call):
        """Test available capacity uses the tighter of the two limits"""
        organization.concurrent_call_limit = 5
        organization.save()
        run.config = {'concurrency_limit': 2}
        run.save()
        make_call(status='in-progress')
        make_call(status='completed')

        assert get_available_capacity(run, organization) == 1

    def test_other_runs_consume_org_capacity(self, organization, campaign, run, make_call):
        """Test active calls of other runs count against the org limit"""
        organization.concurrent_call_limit = 2
        organization.save()
        other = Run.objects.create(organization=organization, campaign=campaign, name='Other', status='running')
        make_call(run=other, status='pending')
        make_call(run=other, status='in-progress')

        assert get_available_capacity(run, organization) == 0


@pytest.mark.django_db
class TestCompleteRun:

    def test_open_rows_block_completion(self, run, make_row):
        """Test runs with pending rows are not completed"""
        make_row()

        assert complete_run(run.id) is False
        run.refresh_from_db()
        assert run.status == 'running'

    def test_completion_records_final_counts(self, run, make_row, published_events):
        """Test final counts, end time and duration are recorded once"""
        make_row(status='completed')
        make_row(status='failed')
        make_row(status='skipped')

        assert complete_run(run.id) is True
        assert complete_run(run.id) is False

        run.refresh_from_db()
        timing = run.metrics.run
        assert run.status == 'completed'
        assert timing.final_counts == {'total': 3, 'completed': 1, 'failed': 1, 'skipped': 1}
        assert timing.end_time is not None
        assert timing.duration > 0
        assert ('run-updated' in [event for _, event, _ in published_events()])

    def test_row_totals_invariant(self, run, make_row):
        """Test per-status counts always add up to the total"""
        for status in ('pending', 'calling', 'completed', 'failed', 'skipped', 'completed'):
            make_row(status=status)

        counts = count_rows_by_status(run.id)

        assert counts['total'] == 6
        assert sum(v for k, v in counts.items() if k != 'total') == counts['total']


@pytest.mark.django_db
class TestRunTransitions:

    def test_office_hours_pause_keeps_concurrent_metrics(self, run):
        """Test pausing from a stale run instance does not drop counters written meanwhile"""
        stale = Run.objects.get(id=run.id)
        record_run_metrics(run.id, {'calls.completed': 2})

        assert pause_for_office_hours(stale) is True

        run.refresh_from_db()
        assert run.status == 'paused'
        assert run.metrics.run.pause_reason == 'outside_office_hours'
        assert run.metrics.calls.completed == 2
        assert stale.status == 'paused'

    def test_office_hours_pause_skips_non_running_run(self, organization, run):
        """Test a run paused by the user is not relabelled as an office-hours pause"""
        stale = Run.objects.get(id=run.id)
        pause_run(run.id, organization.id)

        assert pause_for_office_hours(stale) is False

        run.refresh_from_db()
        assert run.metrics.run.pause_reason == 'user'

    def test_resume_keeps_user_pause(self, organization, run):
        """Test resuming from office hours leaves a user pause in place"""
        pause_for_office_hours(Run.objects.get(id=run.id))
        stale = Run.objects.get(id=run.id)
        pause_run(run.id, organization.id)

        assert resume_from_office_hours(stale) is False

        run.refresh_from_db()
        assert run.status == 'paused'
        assert run.metrics.run.pause_reason == 'user'

    def test_resume_clears_office_hours_pause(self, run):
        """Test resuming restores running and keeps counters"""
        pause_for_office_hours(Run.objects.get(id=run.id))
        stale = Run.objects.get(id=run.id)
        record_run_metrics(run.id, {'calls.total': 1})

        assert resume_from_office_hours(stale) is True

        run.refresh_from_db()
        assert run.status == 'running'
        assert run.metrics.run.pause_reason is None
        assert run.metrics.calls.total == 1

    def test_fail_run_keeps_metrics(self, run):
        """Test failing a run records the error next to existing counters"""
        record_run_metrics(run.id, {'calls.failed': 1})

        assert fail_run(run.id, RuntimeError("database went away")) is True

        run.refresh_from_db()
        assert run.status == 'failed'
        assert run.metrics.run.error == "database went away"
        assert run.metrics.calls.failed == 1


# ============================================================================
# TEST: consistency monitor
# ============================================================================

@pytest.mark.django_db
class TestResetStuckRows:

    def _age(self, row, seconds):
        Row.objects.filter(id=row.id).update(updated_at=timezone.now() - timedelta(seconds=seconds))

    def test_resets_only_stale_calling_rows(self, run, make_row):
        """Test stale calling rows go back to pending with diagnostics"""
        stale = make_row(status='calling')
        fresh = make_row(status='calling')
        self._age(stale, 600)

        assert reset_stuck_rows(run.id) == 1

        stale.refresh_from_db()
        fresh.refresh_from_db()
        run.refresh_from_db()
        assert stale.status == 'pending'
        assert stale.error == STUCK_RESET_ERROR
        assert stale.diagnostics.stuck_in_calling is True
        assert stale.diagnostics.reset_count == 1
        assert fresh.status == 'calling'
        assert run.metrics.rows.reset == 1

    def test_second_pass_is_noop(self, run, make_row):
        """Test the sweep is idempotent"""
        row = make_row(status='calling')
        self._age(row, 600)

        reset_stuck_rows(run.id)
        assert reset_stuck_rows(run.id) == 0

        run.refresh_from_db()
        assert run.metrics.rows.reset == 1

    def test_reset_count_accumulates(self, run, make_row):
        """Test repeated stuck episodes keep the previous reset time"""
        row = make_row(status='calling')
        self._age(row, 600)
        reset_stuck_rows(run.id)
        first_reset = Row.objects.get(id=row.id).diagnostics.reset_time

        Row.objects.filter(id=row.id).update(status='calling')
        self._age(row, 600)
        reset_stuck_rows(run.id)

        diagnostics = Row.objects.get(id=row.id).diagnostics
        assert diagnostics.reset_count == 2
        assert diagnostics.previous_reset_time == first_reset

    def test_uses_debouncer_when_given(self, run, make_row):
        """Test metric increments go through the debouncer"""
        row = make_row(status='calling')
        self._age(row, 600)
        debouncer = Mock()

        reset_stuck_rows(run.id, debouncer=debouncer)

        debouncer.increment.assert_called_once_with(run.id, 'rows.reset', 1)

    def test_reset_frees_concurrency_slot(self, organization, run, make_row, make_call):
        """Test the active call behind a stuck row is closed so its slot is released"""
        organization.concurrent_call_limit = 1
        organization.save()
        row = make_row(status='calling', provider_call_id='c-stuck')
        call = make_call(row=row, provider_call_id='c-stuck', status='in-progress')
        self._age(row, 600)
        assert get_available_capacity(run, organization) == 0

        assert reset_stuck_rows(run.id) == 1

        call.refresh_from_db()
        assert call.status == 'failed'
        assert call.error == STALE_CALL_ERROR
        assert get_available_capacity(run, organization) == 1

    def test_closed_calls_leave_calling_gauge(self, run, make_row, make_call):
        """Test closing a stale call decrements the calling gauge"""
        row = make_row(status='calling', provider_call_id='c-stuck')
        make_call(row=row, provider_call_id='c-stuck', status='pending')
        self._age(row, 600)
        debouncer = Mock()

        reset_stuck_rows(run.id, debouncer=debouncer)

        debouncer.increment.assert_any_call(run.id, 'rows.reset', 1)
        debouncer.increment.assert_any_call(run.id, 'calls.calling', -1)

    def test_terminal_calls_are_left_alone(self, run, make_row, make_call):
        """Test only active calls are closed by the reset"""
        row = make_row(status='calling')
        done = make_call(row=row, provider_call_id='c-old', status='no-answer')
        self._age(row, 600)

        reset_stuck_rows(run.id)

        done.refresh_from_db()
        assert done.status == 'no-answer'
        assert done.error is None


@pytest.mark.django_db
class TestReconcileMissedWebhooks:

    def test_fixes_rows_of_terminal_calls(self, run, make_row, make_call):
        """Test rows left calling behind terminal calls are fixed"""
        done = make_row(status='calling', provider_call_id='c1')
        failed = make_row(status='calling', provider_call_id='c2')
        make_call(row=done, provider_call_id='c1', status='voicemail')
        make_call(row=failed, provider_call_id='c2', status='failed', error='dial_failed')

        assert reconcile_missed_webhooks(run.id) == 2

        done.refresh_from_db()
        failed.refresh_from_db()
        run.refresh_from_db()
        assert done.status == 'completed'
        assert done.diagnostics.manually_fixed is True
        assert done.diagnostics.fix_reason == WEBHOOK_FIX_REASON
        assert done.diagnostics.previous_status == 'calling'
        assert done.diagnostics.call_status == 'voicemail'
        assert failed.status == 'failed'
        assert failed.error == 'dial_failed'
        assert run.metrics.calls.voicemail == 1
        assert run.metrics.calls.completed == 1
        assert run.metrics.calls.failed == 1

    def test_ignores_older_calls_of_retried_rows(self, run, make_row, make_call):
        """Test a finished earlier attempt does not close the row's current attempt"""
        row = make_row(status='calling', provider_call_id='c_new')
        make_call(row=row, provider_call_id='c_old', status='completed')
        make_call(row=row, provider_call_id='c_new', status='in-progress')

        assert reconcile_missed_webhooks(run.id) == 0

    def test_consistency_checks_summary(self, run, make_row, make_call):
        """Test both sweeps run and report"""
        row = make_row(status='calling', provider_call_id='c1')
        make_call(row=row, provider_call_id='c1', status='completed')

        assert run_consistency_checks(run.id) == {'webhook_fixes': 1, 'stuck_resets': 0}
        assert run_consistency_checks(run.id) == {'webhook_fixes': 0, 'stuck_resets': 0}


# ============================================================================
# TEST: RunScheduler batch adaptation
# ============================================================================

class TestBatchAdaptation:

    def _scheduler(self):
        return RunScheduler(provider=Mock(), debouncer=Mock(), sleep=Mock(), clock=Mock(return_value=0))

    def test_eighty_percent_keeps_size(self):
        """Test 8/10 success leaves the batch size unchanged"""
        scheduler = self._scheduler()
        scheduler.batch_sizes[1] = 10

        assert scheduler.adjust_batch_size(1, 8, 10) == 10

    def test_sixty_percent_shrinks(self):
        """Test 6/10 success shrinks 10 to 7"""
        scheduler = self._scheduler()
        scheduler.batch_sizes[1] = 10

        assert scheduler.adjust_batch_size(1, 6, 10) == 7

    def test_high_success_grows_to_cap(self):
        """Test growth by one, capped at 20"""
        scheduler = self._scheduler()
        scheduler.batch_sizes[1] = 19

        assert scheduler.adjust_batch_size(1, 10, 10) == 20
        assert scheduler.adjust_batch_size(1, 10, 10) == 20

    def test_shrink_floor(self):
        """Test the size never drops below 1"""
        scheduler = self._scheduler()
        scheduler.batch_sizes[1] = 1

        assert scheduler.adjust_batch_size(1, 0, 5) == 1

    def test_no_attempts_is_unchanged(self):
        """Test batches with nothing attempted do not adapt"""
        scheduler = self._scheduler()
        scheduler.batch_sizes[1] = 10

        assert scheduler.adjust_batch_size(1, 0, 0) == 10

    def test_initial_size_from_config(self):
        """Test configured batch size is clamped into range"""
        scheduler = self._scheduler()

        assert scheduler.get_batch_size(Mock(id=1, config={'batch_size': 50})) == 20
        assert scheduler.get_batch_size(Mock(id=2, config={})) == 10


# ============================================================================
# TEST: RunScheduler.dispatch_row
# ============================================================================

@pytest.mark.django_db
class TestDispatchRow:

    def test_successful_dispatch(self, scheduler, organization, run, make_row, published_events):
        """Test a call is placed and recorded on the row and a Call"""
        row = make_row(variables={'firstName': 'Jane', 'lastName': 'Doe', 'dob': '1946-01-15',
                                  'phone': '+15551234567', 'reason': 'recall'})

        assert scheduler.dispatch_row(run, organization, row) == 'dispatched'

        row.refresh_from_db()
        call = Call.objects.get(row=row)
        assert row.status == 'calling'
        assert row.provider_call_id == 'call_1'
        assert row.call_attempts == 1
        assert row.patient is not None
        assert call.status == 'pending'
        assert call.direction == 'outbound'
        assert call.agent_id == 'agent_123'
        assert call.metadata['attempt'] == 1

        placed = scheduler.provider.calls[0]
        assert placed['to_number'] == '+15551234567'
        assert placed['variables']['organization_name'] == 'Riverside Clinic'
        assert placed['variables']['reason'] == 'recall'
        assert placed['metadata']['rowId'] == row.id
        assert placed['metadata']['patientId'] == row.patient_id

        assert scheduler.debouncer.pending() == {(run.id, 'calls.total'): 1, (run.id, 'calls.calling'): 1}
        events = [(channel, event) for channel, event, _ in published_events()]
        assert (f'run-{run.id}', 'call-started') in events
        assert (f'org-{organization.id}', 'call-started') in events

    def test_lost_claim_is_silent(self, scheduler, organization, run, make_row):
        """Test rows claimed elsewhere are skipped without a call"""
        row = make_row(status='calling')

        assert scheduler.dispatch_row(run, organization, row) == 'conflict'
        assert scheduler.provider.calls == []

    def test_missing_phone(self, scheduler, organization, run, make_row):
        """Test rows without a phone fail without a call"""
        row = make_row(variables={'firstName': 'Jane'})

        assert scheduler.dispatch_row(run, organization, row) == 'invalid'

        row.refresh_from_db()
        assert row.status == 'failed'
        assert row.error == 'No phone number found'
        assert scheduler.provider.calls == []

    def test_patient_hours_skip(self, scheduler, organization, run, make_row):
        """Test rows outside patient hours revert to pending without using a retry"""
        run.config = {'respect_patient_timezone': True, 'call_start_hour': 0, 'call_end_hour': 0}
        row = make_row()

        assert scheduler.dispatch_row(run, organization, row) == 'skipped'

        row.refresh_from_db()
        assert row.status == 'pending'
        assert row.retry_count == 0
        assert row.diagnostics.last_skip_reason == 'timezone_restriction'
        assert scheduler.debouncer.pending() == {(run.id, 'calls.skipped'): 1}
        assert scheduler.provider.calls == []

    def test_provider_error_reverts_without_retry(self, scheduler, clock, organization, run, make_row):
        """Test provider errors put the row back to pending without spending a retry"""
        scheduler.provider.error = ProviderError("Call provider returned 500")
        row = make_row(retry_count=3)

        assert scheduler.dispatch_row(run, organization, row) == 'failed'

        row.refresh_from_db()
        assert clock.sleeps == [3]
        assert row.status == 'pending'
        assert row.retry_count == 3
        assert row.error == "Call provider returned 500"
        assert row.diagnostics.last_error == "Call provider returned 500"
        assert scheduler.debouncer.pending() == {}

    def test_dispatch_error_retries(self, scheduler, clock, organization, run, make_row):
        """Test other dispatch errors put the row back to pending with a retry"""
        scheduler.provider.error = RuntimeError("Variable rendering failed")
        row = make_row()

        assert scheduler.dispatch_row(run, organization, row) == 'failed'

        row.refresh_from_db()
        assert clock.sleeps == []
        assert row.status == 'pending'
        assert row.retry_count == 1
        assert row.diagnostics.last_error == "Variable rendering failed"

    def test_dispatch_error_after_max_retries(self, scheduler, organization, run, make_row):
        """Test rows out of retries fail permanently"""
        scheduler.provider.error = RuntimeError("Variable rendering failed")
        row = make_row(retry_count=3)

        assert scheduler.dispatch_row(run, organization, row) == 'failed'

        row.refresh_from_db()
        assert row.status == 'failed'
        assert row.error.startswith('Max retries exceeded')
        assert scheduler.debouncer.pending() == {(run.id, 'calls.failed'): 1}

    def test_provider_error_with_call_placed(self, scheduler, organization, run, make_row, make_call):
        """Test a call found after a provider error counts as dispatched"""
        row = make_row()

        def placed_then_failed(**kwargs):
            make_call(row=row, provider_call_id='call_late')
            raise ProviderError("Call provider unreachable: timeout")

        scheduler.provider.create_phone_call = placed_then_failed

        assert scheduler.dispatch_row(run, organization, row) == 'dispatched'

        row.refresh_from_db()
        assert row.status == 'calling'
        assert row.provider_call_id == 'call_late'
        assert row.retry_count == 0
        assert Call.objects.filter(row=row).count() == 1

    def test_rate_limit_spacing(self, scheduler, clock, organization, run, make_row):
        """Test consecutive dispatches wait 60/cpm seconds"""
        run.config = {'calls_per_minute': 20}
        first, second = make_row(), make_row()

        scheduler.dispatch_row(run, organization, first)
        scheduler.dispatch_row(run, organization, second)

        assert clock.sleeps == [3.0]


def test_call_variables_drop_none_and_stringify():
    """Test payload variables are strings and None values are dropped"""
    row = Row(variables={'firstName': 'Jane', 'lastName': 'Doe', 'phone': '+15551234567', 'age': 42},
              retry_count=1)
    run = Run(custom_prompt='')
    org = Organization(name='Clinic')
    campaign = Mock()
    campaign.name = 'Recall'

    variables = build_call_variables(row, run, org, campaign)

    assert variables['age'] == '42'
    assert variables['retry_count'] == '1'
    assert variables['first_name'] == 'Jane'
    assert variables['patient_phone'] == '+15551234567'
    assert 'custom_prompt' not in variables


# ============================================================================
# TEST: CallProviderClient
# ============================================================================

class TestCallProviderClient:

    def _client(self, handler):
        return CallProviderClient(base_url='https://provider.test', api_key='key_123', timeout=5,
                                  transport=httpx.MockTransport(handler))

    def _place(self, client):
        return client.create_phone_call(
            to_number='+15551234567',
            from_number='+15550000000',
            agent_id='agent_123',
            variables={'first_name': 'Jane'},
            metadata={'rowId': 1},
        )

    def test_returns_call_id(self):
        """Test the request body and auth header, and the returned call id"""
        seen = {}

        def handler(request):
            seen['path'] = request.url.path
            seen['auth'] = request.headers['Authorization']
            seen['body'] = json.loads(request.content)
            return httpx.Response(201, json={'call_id': 'call_abc'})

        assert self._place(self._client(handler)) == 'call_abc'
        assert seen['path'] == '/v2/create-phone-call'
        assert seen['auth'] == 'Bearer key_123'
        assert seen['body']['override_agent_id'] == 'agent_123'
        assert seen['body']['retell_llm_dynamic_variables'] == {'first_name': 'Jane'}
        assert seen['body']['metadata'] == {'rowId': 1}

    def test_error_status(self):
        """Test 4xx/5xx responses raise ProviderError with the status code"""
        client = self._client(lambda request: httpx.Response(500, text='upstream down'))

        with pytest.raises(ProviderError) as exc_info:
            self._place(client)

        assert exc_info.value.details['status_code'] == 500

    def test_missing_call_id(self):
        """Test a success body without call_id is an error"""
        client = self._client(lambda request: httpx.Response(200, json={'status': 'ok'}))

        with pytest.raises(ProviderError):
            self._place(client)

    def test_transport_error_resets_client(self):
        """Test network failures raise ProviderError and drop the HTTP client"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = self._client(handler)

        with pytest.raises(ProviderError):
            self._place(client)

        assert client._http is None


# ============================================================================
# TEST: RunScheduler.process_run (dispatch loop)
# ============================================================================

@pytest.mark.django_db
class TestProcessRun:

    def test_three_rows_end_to_end(self, scheduler, clock, organization, run, make_row):
        """Test 3 rows at 60 cpm are dialed at >= 1s gaps and the run completes on its own"""
        run.config = {'calls_per_minute': 60}
        run.save()
        for _ in range(3):
            make_row()
        clock.on_sleep = lambda: deliver_webhooks(organization.id)

        scheduler.process_run(run.id, organization.id)

        times = [placed['at'] for placed in scheduler.provider.calls]
        assert len(times) == 3
        assert all(b - a >= 1 for a, b in zip(times, times[1:]))

        run.refresh_from_db()
        assert run.status == 'completed'
        assert run.metrics.run.final_counts == {'total': 3, 'completed': 3, 'failed': 0, 'skipped': 0}
        assert run.metrics.calls.total == 3
        assert run.metrics.calls.completed == 3
        assert run.metrics.calls.calling == 0
        assert count_rows_by_status(run.id)['completed'] == 3
        assert scheduler.debouncer.pending() == {}
        assert run.id not in scheduler.processing

    def test_priority_order(self, scheduler, clock, organization, run, make_row):
        """Test higher priority rows are dialed first, then by sort index"""
        make_row(sort_index=1, variables={'phone': '+15550000001'})
        make_row(sort_index=2, priority=5, variables={'phone': '+15550000002'})
        make_row(sort_index=0, variables={'phone': '+15550000003'})
        clock.on_sleep = lambda: deliver_webhooks(organization.id)

        scheduler.process_run(run.id, organization.id)

        assert [placed['to_number'] for placed in scheduler.provider.calls] == [
            '+15550000002', '+15550000003', '+15550000001',
        ]

    def test_retries_then_fails_row(self, scheduler, clock, organization, run, make_row):
        """Test a row failing on every attempt is retried, failed and the run still completes"""
        run.config = {'max_retries': 1}
        run.save()
        row = make_row()
        scheduler.provider.error = RuntimeError("Variable rendering failed")

        result = scheduler.process_run(run.id, organization.id)

        row.refresh_from_db()
        run.refresh_from_db()
        assert result == {'status': 'completed'}
        assert len(scheduler.provider.calls) == 2
        assert row.status == 'failed'
        assert row.retry_count == 1
        assert run.metrics.calls.failed == 1
        assert run.metrics.run.final_counts['failed'] == 1

    def test_provider_outage_keeps_retry_budget(self, scheduler, clock, organization, run, make_row):
        """Test a row survives a provider outage with no retries configured"""
        run.config = {'max_retries': 0}
        run.save()
        row = make_row()
        scheduler.provider.error = ProviderError("Call provider unreachable: timeout")

        def provider_back_up():
            scheduler.provider.error = None
            deliver_webhooks(organization.id)

        clock.on_sleep = provider_back_up

        result = scheduler.process_run(run.id, organization.id)

        row.refresh_from_db()
        assert result == {'status': 'completed'}
        assert len(scheduler.provider.calls) == 2
        assert row.status == 'completed'
        assert row.retry_count == 0

    def test_consecutive_errors_back_off(self, scheduler, clock, organization, run, make_row):
        """Test three consecutive failures shrink the batch and back off"""
        run.config = {'max_retries': 5}
        run.save()
        for _ in range(3):
            make_row()

        def failing_call(**kwargs):
            scheduler.provider.calls.append(kwargs)
            if len(scheduler.provider.calls) == 3:
                Run.objects.filter(id=run.id).update(status='paused')
            raise ProviderError("Call provider returned 500")

        scheduler.provider.create_phone_call = failing_call

        result = scheduler.process_run(run.id, organization.id)

        assert result == {'status': 'stopped', 'reason': 'run_paused'}
        assert 15 in clock.sleeps
        assert scheduler.batch_sizes[run.id] == 5

    def test_office_hours_pause_and_resume(self, scheduler, clock, organization, run, published_events):
        """Test the loop pauses outside office hours and resumes when the window opens"""
        organization.office_hours = {'someday': {'start': '09:00', 'end': '17:00'}}
        organization.save()

        def open_office():
            Organization.objects.filter(id=organization.id).update(office_hours={})

        clock.on_sleep = open_office

        result = scheduler.process_run(run.id, organization.id)

        run.refresh_from_db()
        assert result == {'status': 'completed'}
        assert clock.sleeps[0] == 15 * 60
        assert run.metrics.run.pause_reason is None
        assert run.metrics.run.last_paused_at is not None
        events = [event for _, event, _ in published_events()]
        assert 'run-paused' in events
        assert events.count('run-updated') >= 3

    def test_user_pause_during_office_hours_wait(self, scheduler, clock, organization, run):
        """Test a user pause issued while waiting for office hours stops the loop"""
        organization.office_hours = {'someday': {'start': '09:00', 'end': '17:00'}}
        organization.save()
        clock.on_sleep = lambda: pause_run(run.id, organization.id)

        result = scheduler.process_run(run.id, organization.id)

        run.refresh_from_db()
        assert result == {'status': 'stopped', 'reason': 'run_paused'}
        assert clock.sleeps == [15 * 60]
        assert run.status == 'paused'
        assert run.metrics.run.pause_reason == 'user'
        assert scheduler.provider.calls == []

    def test_user_pause_stops_loop(self, scheduler, organization, run):
        """Test a user-paused run is not processed"""
        Run.objects.filter(id=run.id).update(status='paused')

        assert scheduler.process_run(run.id, organization.id) == {'status': 'stopped', 'reason': 'run_paused'}

    def test_run_from_other_org(self, scheduler, organization, run):
        """Test the run must belong to the organization"""
        result = scheduler.process_run(run.id, organization.id + 1)

        assert result == {'status': 'stopped', 'reason': 'not_found'}

    def test_already_processing(self, scheduler, organization, run):
        """Test a second loop for the same run is refused"""
        scheduler.processing.add(run.id)

        assert scheduler.process_run(run.id, organization.id)['status'] == 'skipped'

    def test_unexpected_error_fails_run(self, scheduler, organization, run, make_row):
        """Test errors escaping the loop mark the run failed"""
        make_row()
        with patch('dialer.scheduler.get_available_capacity', side_effect=RuntimeError("db down")):
            result = scheduler.process_run(run.id, organization.id)

        run.refresh_from_db()
        assert result['status'] == 'failed'
        assert run.status == 'failed'
        assert run.metrics.run.error == 'db down'
        assert 'RuntimeError' in run.metrics.run.error_stack
        assert run.id not in scheduler.processing

    def test_heartbeat_called(self, scheduler, organization, run):
        """Test the heartbeat runs every iteration"""
        heartbeat = Mock()

        scheduler.process_run(run.id, organization.id, heartbeat=heartbeat)

        assert heartbeat.called


# ============================================================================
# TEST: services
# ============================================================================

@pytest.mark.django_db
class TestCreateRun:

    def test_creates_draft(self, organization, campaign):
        """Test a draft run with initialized metrics"""
        result = create_run(organization.id, campaign.id, 'April Recall', config={'calls_per_minute': 12})

        assert result['success'] is True
        run = Run.objects.get(id=result['data']['id'])
        assert run.status == 'draft'
        assert run.config == {'calls_per_minute': 12}
        assert run.metrics.run.created_at is not None
        assert run.metrics.calls.total == 0

    def test_campaign_of_other_org(self, organization, campaign):
        """Test campaigns are scoped to the organization"""
        other = Organization.objects.create(name='Other')

        result = create_run(other.id, campaign.id, 'April Recall')

        assert result['error']['code'] == 'NOT_FOUND'

    def test_blank_name(self, organization, campaign):
        """Test a name is required"""
        assert create_run(organization.id, campaign.id, '  ')['error']['code'] == 'VALIDATION_ERROR'


@pytest.mark.django_db
class TestIngestRunFile:

    def _draft(self, run):
        Run.objects.filter(id=run.id).update(status='draft')
        return run

    def test_upload_creates_rows(self, organization, run, published_events):
        """Test valid rows are stored, counted and the run becomes ready"""
        self._draft(run)

        result = ingest_run_file(run.id, organization.id, SAMPLE_CSV, 'list.csv')

        assert result['success'] is True
        data = result['data']
        assert data['rows_created'] == 2
        assert data['stats']['invalid_rows'] == 1
        assert data['errors'][0].startswith('Row 4:')

        run.refresh_from_db()
        rows = list(Row.objects.filter(run=run).order_by('sort_index'))
        assert run.status == 'ready'
        assert [r.sort_index for r in rows] == [0, 1]
        assert all(r.patient_id for r in rows)
        assert rows[0].variables['primaryPhone'] == '+15551234567'
        assert run.metrics.rows.total == 2
        assert run.metrics.rows.invalid == 1

    def test_second_upload_appends(self, organization, run):
        """Test later uploads continue the sort order"""
        self._draft(run)
        ingest_run_file(run.id, organization.id, SAMPLE_CSV, 'list.csv')
        ingest_run_file(run.id, organization.id, SAMPLE_CSV, 'list.csv')

        run.refresh_from_db()
        assert sorted(Row.objects.filter(run=run).values_list('sort_index', flat=True)) == [0, 1, 2, 3]
        assert run.metrics.rows.total == 4

    def test_priority_column(self, organization, run):
        """Test a numeric priority variable becomes the row priority"""
        self._draft(run)
        content = (
            "First Name,Last Name,DOB,Phone,Priority\n"
            "Jane,Doe,01/15/1946,5551234567,5\n"
            "John,Smith,02/29/1980,5559876543,urgent\n"
        ).encode('utf-8')

        ingest_run_file(run.id, organization.id, content, 'list.csv')

        rows = list(Row.objects.filter(run=run).order_by('sort_index'))
        assert [r.priority for r in rows] == [5, 0]

    def test_validate_only(self, organization, run):
        """Test validate-only uploads create nothing"""
        self._draft(run)

        result = ingest_run_file(run.id, organization.id, SAMPLE_CSV, 'list.csv', validate_only=True)

        run.refresh_from_db()
        assert result['data']['rows_created'] == 0
        assert result['data']['stats']['valid_rows'] == 2
        assert Row.objects.filter(run=run).count() == 0
        assert run.status == 'draft'

    def test_running_run_rejects_upload(self, organization, run):
        """Test rows cannot be added to a running run"""
        result = ingest_run_file(run.id, organization.id, SAMPLE_CSV, 'list.csv')

        assert result['error']['code'] == 'BAD_REQUEST'

    def test_unreadable_file_restores_status(self, organization, run):
        """Test a parse error leaves the run in its previous status"""
        self._draft(run)

        result = ingest_run_file(run.id, organization.id, b'', 'list.csv')

        run.refresh_from_db()
        assert result['error']['code'] == 'BAD_REQUEST'
        assert run.status == 'draft'


@pytest.mark.django_db
class TestStartRun:

    def test_start_ready_run(self, organization, run, make_row, mock_process_run):
        """Test starting resets calling rows, records start and queues processing"""
        Run.objects.filter(id=run.id).update(status='ready', metadata={})
        stuck = make_row(status='calling')

        result = start_run(run.id, organization.id)

        run.refresh_from_db()
        stuck.refresh_from_db()
        assert result['success'] is True
        assert result['data']['rows_reset'] == 1
        assert run.status == 'running'
        assert run.metrics.run.start_time is not None
        assert stuck.status == 'pending'
        assert stuck.diagnostics.status_reset is True
        mock_process_run.delay.assert_called_once_with(run.id, organization.id)

    def test_resume_keeps_start_time(self, organization, run, mock_process_run):
        """Test resuming a paused run keeps the original start and clears the pause reason"""
        metrics = run.metrics
        metrics.run.pause_reason = 'user'
        run.set_metrics(metrics)
        run.status = 'paused'
        run.save()

        start_run(run.id, organization.id)

        run.refresh_from_db()
        assert run.metrics.run.start_time == '2025-03-03T14:00:00+00:00'
        assert run.metrics.run.pause_reason is None

    def test_cannot_start_completed_run(self, organization, run, mock_process_run):
        """Test terminal runs cannot be started"""
        Run.objects.filter(id=run.id).update(status='completed')

        result = start_run(run.id, organization.id)

        assert result['error']['code'] == 'BAD_REQUEST'
        mock_process_run.delay.assert_not_called()

    def test_unknown_run(self, organization, mock_process_run):
        """Test NOT_FOUND for unknown runs"""
        assert start_run(999, organization.id)['error']['code'] == 'NOT_FOUND'


@pytest.mark.django_db
class TestPauseRun:

    def test_pause_running_run(self, organization, run, published_events):
        """Test pausing records the reason and notifies both channels"""
        result = pause_run(run.id, organization.id)

        run.refresh_from_db()
        assert result['success'] is True
        assert run.status == 'paused'
        assert run.metrics.run.pause_reason == 'user'
        assert run.metrics.run.last_paused_at is not None
        events = [(channel, event) for channel, event, _ in published_events()]
        assert (f'org-{organization.id}', 'run-updated') in events
        assert (f'run-{run.id}', 'run-paused') in events

    def test_pause_requires_running(self, organization, run):
        """Test only running runs can be paused"""
        Run.objects.filter(id=run.id).update(status='draft')

        assert pause_run(run.id, organization.id)['error']['code'] == 'BAD_REQUEST'

    def test_user_pause_overrides_office_hours_pause(self, organization, run):
        """Test a run waiting out office hours can be paused by the user"""
        metrics = run.metrics
        metrics.run.pause_reason = 'outside_office_hours'
        run.set_metrics(metrics)
        run.status = 'paused'
        run.save()

        result = pause_run(run.id, organization.id)

        run.refresh_from_db()
        assert result['success'] is True
        assert run.status == 'paused'
        assert run.metrics.run.pause_reason == 'user'

    def test_user_paused_run_cannot_be_paused_again(self, organization, run):
        """Test pausing an already user-paused run is rejected"""
        pause_run(run.id, organization.id)

        assert pause_run(run.id, organization.id)['error']['code'] == 'BAD_REQUEST'


@pytest.mark.django_db
class TestScheduleRun:

    def test_schedule_future(self, organization, run, mock_activate_task):
        """Test scheduling stores the time and queues activation at that time"""
        Run.objects.filter(id=run.id).update(status='ready')
        when = timezone.now() + timedelta(hours=2)

        result = schedule_run(run.id, when.isoformat(), organization.id)

        run.refresh_from_db()
        assert result['success'] is True
        assert run.status == 'scheduled'
        assert abs((run.scheduled_at - when).total_seconds()) < 1
        kwargs = mock_activate_task.apply_async.call_args[1]
        assert kwargs['args'] == [run.id, organization.id]
        assert abs((kwargs['eta'] - when).total_seconds()) < 1

    def test_schedule_in_past(self, organization, run, mock_activate_task):
        """Test past times are rejected"""
        Run.objects.filter(id=run.id).update(status='ready')
        when = timezone.now() - timedelta(minutes=1)

        assert schedule_run(run.id, when, organization.id)['error']['code'] == 'VALIDATION_ERROR'
        mock_activate_task.apply_async.assert_not_called()

    def test_schedule_invalid_time(self, organization, run, mock_activate_task):
        """Test unparseable times are rejected"""
        assert schedule_run(run.id, 'next tuesday', organization.id)['error']['code'] == 'VALIDATION_ERROR'

    def test_schedule_running_run(self, organization, run, mock_activate_task):
        """Test running runs cannot be scheduled"""
        when = timezone.now() + timedelta(hours=1)

        assert schedule_run(run.id, when, organization.id)['error']['code'] == 'BAD_REQUEST'


@pytest.mark.django_db
class TestActivateScheduledRun:

    def test_due_run_starts(self, organization, run, mock_process_run):
        """Test due scheduled runs are started"""
        Run.objects.filter(id=run.id).update(status='scheduled', scheduled_at=timezone.now() - timedelta(seconds=1))

        result = activate_scheduled_run(run.id, organization.id)

        run.refresh_from_db()
        assert result['data']['activated'] is True
        assert run.status == 'running'
        mock_process_run.delay.assert_called_once()

    def test_not_yet_due(self, organization, run, mock_process_run):
        """Test runs scheduled in the future are left alone"""
        Run.objects.filter(id=run.id).update(status='scheduled', scheduled_at=timezone.now() + timedelta(hours=1))

        result = activate_scheduled_run(run.id, organization.id)

        assert result['data']['activated'] is False
        mock_process_run.delay.assert_not_called()

    def test_failed_activation_marks_run_failed(self, organization, run, published_events):
        """Test a failed start fails the run and reports the reason"""
        Run.objects.filter(id=run.id).update(status='scheduled', scheduled_at=timezone.now())
        error = {'success': False, 'error': {'code': 'INTERNAL_ERROR', 'message': 'broker down'}}

        with patch('dialer.services.start_run', return_value=error):
            result = activate_scheduled_run(run.id, organization.id)

        run.refresh_from_db()
        assert result == error
        assert run.status == 'failed'
        assert run.metrics.run.error == 'broker down'
        paused = [data for channel, event, data in published_events() if event == 'run-paused']
        assert 'broker down' in paused[0]['reason']


# ============================================================================
# TEST: Celery tasks
# ============================================================================

@pytest.fixture
def mock_conn():
    """Mock Redis connection used for run locks"""
    with patch('dialer.tasks.conn') as mock:
        yield mock


class TestProcessRunTask:

    def test_locked_run_is_skipped(self, mock_conn):
        """Test a held run lock skips processing"""
        mock_conn.set.return_value = None

        with patch('dialer.tasks.get_scheduler') as mock_get:
            result = process_run(1, 2)

        assert result['status'] == 'skipped'
        assert result['reason'] == 'run_locked'
        mock_get.assert_not_called()
        mock_conn.delete.assert_not_called()

    def test_delegates_and_releases_lock(self, mock_conn):
        """Test the scheduler runs under the lock and the lock is released"""
        mock_conn.set.return_value = True
        scheduler = Mock()
        scheduler.process_run.return_value = {'status': 'completed'}

        with patch('dialer.tasks.get_scheduler', return_value=scheduler):
            result = process_run(1, 2)

        assert result['status'] == 'completed'
        scheduler.process_run.assert_called_once()
        assert scheduler.process_run.call_args[0] == (1, 2)
        mock_conn.set.assert_called_once_with('RUN_PROCESSING_LOCK:1', '1', ex=1200, nx=True)
        mock_conn.delete.assert_called_once_with('RUN_PROCESSING_LOCK:1')

    def test_heartbeat_refreshes_lock(self, mock_conn):
        """Test the heartbeat extends the lock expiry"""
        mock_conn.set.return_value = True
        scheduler = Mock()

        def run_loop(run_id, org_id, heartbeat):
            heartbeat()
            return {'status': 'completed'}

        scheduler.process_run.side_effect = run_loop

        with patch('dialer.tasks.get_scheduler', return_value=scheduler):
            process_run(1, 2)

        mock_conn.expire.assert_called_once_with('RUN_PROCESSING_LOCK:1', 1200)

    def test_scheduler_error_releases_lock(self, mock_conn):
        """Test unexpected errors are reported and the lock is still released"""
        mock_conn.set.return_value = True
        scheduler = Mock()
        scheduler.process_run.side_effect = Exception("boom")

        with patch('dialer.tasks.get_scheduler', return_value=scheduler), patch('dialer.tasks.logger'):
            result = process_run(1, 2)

        assert result['status'] == 'error'
        mock_conn.delete.assert_called_once()

    def test_lock_error_is_treated_as_locked(self, mock_conn):
        """Test Redis errors while locking skip processing"""
        mock_conn.set.side_effect = Exception("Redis down")

        assert process_run(1, 2)['reason'] == 'run_locked'

    def test_get_scheduler_is_cached(self):
        """Test one scheduler instance per process"""
        assert get_scheduler() is get_scheduler()


@pytest.mark.django_db
class TestPeriodicTasks:

    def test_check_scheduled_runs(self, organization, run, mock_process_run):
        """Test overdue scheduled runs are activated"""
        Run.objects.filter(id=run.id).update(status='scheduled', scheduled_at=timezone.now() - timedelta(minutes=5))

        assert check_scheduled_runs() == 1

        run.refresh_from_db()
        assert run.status == 'running'

    def test_sweep_running_runs(self, organization, run, make_row, make_call):
        """Test the sweep heals rows and completes finished runs"""
        row = make_row(status='calling', provider_call_id='c1')
        make_call(row=row, provider_call_id='c1', status='completed')

        summary = sweep_running_runs()

        run.refresh_from_db()
        assert summary['webhook_fixes'] == 1
        assert summary['completed'] == 1
        assert run.status == 'completed'


# ============================================================================
# TEST: run API endpoints
# ============================================================================

@pytest.mark.django_db
class TestRunViews:

    def test_create_run(self, client, organization, campaign):
        """Test POST create returns 201 with the run"""
        response = client.post('/api/runs/create/', data=json.dumps({
            'org_id': organization.id, 'campaign_id': campaign.id, 'name': 'Via API',
        }), content_type='application/json')

        assert response.status_code == 201
        assert response.json()['data']['status'] == 'draft'

    def test_create_run_missing_fields(self, client):
        """Test missing fields return 400"""
        response = client.post('/api/runs/create/', data=json.dumps({'name': 'x'}),
                               content_type='application/json')

        assert response.status_code == 400

    def test_upload(self, client, organization, run):
        """Test multipart upload reaches ingestion"""
        Run.objects.filter(id=run.id).update(status='draft')
        from django.core.files.uploadedfile import SimpleUploadedFile
        upload = SimpleUploadedFile('list.csv', SAMPLE_CSV, content_type='text/csv')

        response = client.post(f'/api/runs/{run.id}/upload/', data={'org_id': organization.id, 'file': upload})

        assert response.status_code == 200
        assert response.json()['data']['rows_created'] == 2

    def test_start_and_status(self, client, organization, run, mock_process_run):
        """Test start maps to 200 and status reports row counts"""
        Run.objects.filter(id=run.id).update(status='ready')

        response = client.post(f'/api/runs/{run.id}/start/', data=json.dumps({'org_id': organization.id}),
                               content_type='application/json')
        status = client.get(f'/api/runs/{run.id}/', {'org_id': organization.id})

        assert response.status_code == 200
        assert status.json()['data']['status'] == 'running'
        assert status.json()['data']['row_counts']['total'] == 0

    def test_pause_conflict_maps_to_400(self, client, organization, run):
        """Test invalid transitions map to 400"""
        Run.objects.filter(id=run.id).update(status='completed')

        response = client.post(f'/api/runs/{run.id}/pause/', data=json.dumps({'org_id': organization.id}),
                               content_type='application/json')

        assert response.status_code == 400

    def test_unknown_run_is_404(self, client, organization):
        """Test NOT_FOUND maps to 404"""
        response = client.get('/api/runs/999/', {'org_id': organization.id})

        assert response.status_code == 404
