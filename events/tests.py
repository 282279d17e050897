"""
Unit tests for events (notifier, webhook status updates, webhook task and view)

Tests cover:
- Event publication and failure handling
- MetricDebouncer coalescing, deadlines and flush failures
- record_run_metrics persistence
- apply_call_status_update ordering, idempotency and row/metric effects
- Late call registration from provider metadata
- process_call_webhook task and provider webhook endpoint
"""

import pytest
import orjson as json
from unittest.mock import Mock, patch

from dialer.models import Call, Row, Run
from events.notifier import MetricDebouncer, publish_event, publish_run_event, record_run_metrics
from events.tasks import process_call_webhook
from events.utils import apply_call_status_update, map_call_status
from run_engine.exceptions import NotFoundError, ValidationError


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def webhook(call_id, event='call_ended', status='ended', reason=None, **extra):
    call = {'call_id': call_id, 'call_status': status}
    if reason:
        call['disconnection_reason'] = reason
    call.update(extra)
    return {'event': event, 'call': call}


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def mock_logger():
    """Mock notifier logger"""
    with patch('events.notifier.logger') as mock:
        yield mock


@pytest.fixture
def calling_row(make_row):
    return make_row(status='calling', provider_call_id='call_abc')


@pytest.fixture
def pending_call(make_call, calling_row):
    return make_call(row=calling_row, provider_call_id='call_abc')


# ============================================================================
# TEST: publish_event
# ============================================================================

class TestPublishEvent:

    def test_publish_success(self, mock_publish_conn):
        """Test event is published as an orjson document on the run channel"""
        assert publish_run_event(5, 'call-started', {'rowId': 1}) is True

        channel, payload = mock_publish_conn.publish.call_args[0]
        assert channel == 'run-5'
        assert json.loads(payload) == {'event': 'call-started', 'data': {'rowId': 1}}

    def test_publish_failure_is_swallowed(self, mock_publish_conn, mock_logger):
        """Test publication errors are logged and never raised"""
        mock_publish_conn.publish.side_effect = Exception("Redis down")

        assert publish_event('org-1', 'run-updated', {}) is False
        mock_logger.error.assert_called_once()


# ============================================================================
# TEST: MetricDebouncer
# ============================================================================

class TestMetricDebouncer:

    def test_increments_coalesce_until_deadline(self):
        """Test increments are summed per key and persisted once per run"""
        clock = FakeClock()
        persist = Mock()
        debouncer = MetricDebouncer(window=0.5, clock=clock, persist=persist)

        debouncer.increment(1, 'calls.total')
        debouncer.increment(1, 'calls.total')
        debouncer.increment(1, 'calls.failed')

        assert debouncer.pending() == {(1, 'calls.total'): 2, (1, 'calls.failed'): 1}
        assert debouncer.flush_due() == 0
        persist.assert_not_called()

        clock.advance(0.5)
        assert debouncer.flush_due() == 1
        persist.assert_called_once_with(1, {'calls.total': 2, 'calls.failed': 1})
        assert debouncer.pending() == {}

    def test_increment_extends_deadline(self):
        """Test a new increment pushes the key's deadline out"""
        clock = FakeClock()
        persist = Mock()
        debouncer = MetricDebouncer(window=0.5, clock=clock, persist=persist)

        debouncer.increment(1, 'calls.total')
        clock.advance(0.4)
        debouncer.increment(1, 'calls.total')
        clock.advance(0.2)

        assert debouncer.flush_due() == 0

        clock.advance(0.3)
        assert debouncer.flush_due() == 1
        persist.assert_called_once_with(1, {'calls.total': 2})

    def test_flush_all_for_one_run(self):
        """Test flush_all(run_id) leaves other runs pending"""
        persist = Mock()
        debouncer = MetricDebouncer(window=10, clock=FakeClock(), persist=persist)
        debouncer.increment(1, 'calls.total')
        debouncer.increment(2, 'calls.total', 3)

        assert debouncer.flush_all(1) == 1

        persist.assert_called_once_with(1, {'calls.total': 1})
        assert debouncer.pending() == {(2, 'calls.total'): 3}

    def test_persist_failure_is_logged(self, mock_logger):
        """Test a failing persist does not raise"""
        persist = Mock(side_effect=Exception("db down"))
        debouncer = MetricDebouncer(window=0, clock=FakeClock(), persist=persist)
        debouncer.increment(1, 'calls.total')

        assert debouncer.flush_all() == 1
        mock_logger.exception.assert_called_once()
        assert debouncer.pending() == {}


# ============================================================================
# TEST: record_run_metrics
# ============================================================================

@pytest.mark.django_db
class TestRecordRunMetrics:

    def test_applies_deltas_and_publishes(self, run, published_events):
        """Test deltas land in run metadata and a metrics-updated event goes out"""
        record_run_metrics(run.id, {'calls.total': 2, 'rows.reset': 1})

        run.refresh_from_db()
        assert run.metrics.calls.total == 2
        assert run.metrics.rows.reset == 1
        assert run.metrics.run.start_time == '2025-03-03T14:00:00+00:00'

        channel, event, data = published_events()[-1]
        assert (channel, event) == (f'run-{run.id}', 'metrics-updated')
        assert data['metrics']['calls']['total'] == 2

    def test_missing_run(self, db):
        """Test unknown runs are ignored"""
        assert record_run_metrics(999, {'calls.total': 1}) is None

    def test_unknown_metric_path(self, run):
        """Test invalid counter paths raise ValueError"""
        with pytest.raises(ValueError):
            record_run_metrics(run.id, {'calls.bogus': 1})


# ============================================================================
# TEST: map_call_status
# ============================================================================

class TestMapCallStatus:

    def test_live_statuses(self):
        """Test registered/ongoing map to in-progress"""
        assert map_call_status('registered') == 'in-progress'
        assert map_call_status('ongoing') == 'in-progress'

    def test_ended_refined_by_disconnection(self):
        """Test disconnection reasons refine ended calls"""
        assert map_call_status('ended', 'user_hangup') == 'completed'
        assert map_call_status('ended', 'voicemail_reached') == 'voicemail'
        assert map_call_status('ended', 'dial_no_answer') == 'no-answer'
        assert map_call_status('ended', 'dial_busy') == 'failed'
        assert map_call_status('ended', 'error_llm_websocket_open') == 'failed'

    def test_unknown_status(self):
        """Test unknown provider statuses map to None"""
        assert map_call_status('mystery') is None


# ============================================================================
# TEST: apply_call_status_update
# ============================================================================

@pytest.mark.django_db
class TestApplyCallStatusUpdate:

    def test_call_started(self, organization, pending_call, calling_row):
        """Test call_started moves the call to in-progress and leaves the row calling"""
        result = apply_call_status_update(organization.id, webhook('call_abc', event='call_started',
                                                                    status='ongoing'))

        pending_call.refresh_from_db()
        calling_row.refresh_from_db()
        assert result['updated'] is True
        assert pending_call.status == 'in-progress'
        assert calling_row.status == 'calling'

    def test_call_ended_completes_row_and_run(self, organization, run, pending_call, calling_row,
                                              published_events):
        """Test terminal webhook updates call, row, metrics and completes the run"""
        apply_call_status_update(organization.id, webhook(
            'call_abc', reason='user_hangup',
            recording_url='https://example.com/rec.wav', transcript='Agent: hello',
        ))

        pending_call.refresh_from_db()
        calling_row.refresh_from_db()
        run.refresh_from_db()
        assert pending_call.status == 'completed'
        assert pending_call.recording_url == 'https://example.com/rec.wav'
        assert calling_row.status == 'completed'
        assert run.metrics.calls.completed == 1
        assert run.status == 'completed'
        assert run.metrics.run.final_counts == {'total': 1, 'completed': 1, 'failed': 0, 'skipped': 0}

        events = [(channel, event) for channel, event, _ in published_events()]
        assert (f'org-{organization.id}', 'call-updated') in events
        assert (f'run-{run.id}', 'call-updated') in events
        assert (f'org-{organization.id}', 'run-updated') in events

    def test_duplicate_webhook_is_noop(self, organization, run, pending_call, make_row):
        """Test the same terminal webhook twice counts once"""
        make_row()  # keeps the run open
        apply_call_status_update(organization.id, webhook('call_abc', reason='user_hangup'))
        result = apply_call_status_update(organization.id, webhook('call_abc', reason='user_hangup'))

        run.refresh_from_db()
        assert result['updated'] is False
        assert run.metrics.calls.completed == 1
        assert run.status == 'running'

    def test_late_started_after_ended_is_ignored(self, organization, pending_call):
        """Test a lower-rank status never moves a call backwards"""
        apply_call_status_update(organization.id, webhook('call_abc', reason='user_hangup'))
        apply_call_status_update(organization.id, webhook('call_abc', event='call_started', status='ongoing'))

        pending_call.refresh_from_db()
        assert pending_call.status == 'completed'

    def test_voicemail(self, organization, run, pending_call, calling_row, make_row):
        """Test voicemail completes the row and counts both metrics"""
        make_row()
        apply_call_status_update(organization.id, webhook('call_abc', reason='voicemail_reached'))

        calling_row.refresh_from_db()
        run.refresh_from_db()
        assert calling_row.status == 'completed'
        assert run.metrics.calls.completed == 1
        assert run.metrics.calls.voicemail == 1

    def test_failed_call_fails_row(self, organization, run, pending_call, calling_row, make_row):
        """Test a busy signal fails the row with the disconnection reason"""
        make_row()
        apply_call_status_update(organization.id, webhook('call_abc', reason='dial_busy'))

        pending_call.refresh_from_db()
        calling_row.refresh_from_db()
        run.refresh_from_db()
        assert pending_call.status == 'failed'
        assert pending_call.error == 'dial_busy'
        assert calling_row.status == 'failed'
        assert calling_row.error == 'dial_busy'
        assert run.metrics.calls.failed == 1

    def test_analysis_counts_and_late_merge(self, organization, run, pending_call, make_row):
        """Test connected/converted counters and analysis merging into a terminal call"""
        make_row()
        apply_call_status_update(organization.id, webhook(
            'call_abc', reason='user_hangup',
            call_analysis={'patient_reached': True, 'call_successful': True},
        ))
        result = apply_call_status_update(organization.id, webhook(
            'call_abc', event='call_analyzed',
            call_analysis={'custom_analysis_data': {'appointment_confirmed': True}},
        ))

        pending_call.refresh_from_db()
        run.refresh_from_db()
        assert result['updated'] is True
        assert pending_call.status == 'completed'
        assert pending_call.analysis['patient_reached'] is True
        assert pending_call.analysis['custom_analysis_data'] == {'appointment_confirmed': True}
        assert run.metrics.calls.connected == 1
        assert run.metrics.calls.converted == 1
        assert run.metrics.calls.completed == 1

    def test_stale_call_does_not_touch_retried_row(self, organization, make_row, make_call):
        """Test a late webhook for an older call leaves the row's current call alone"""
        row = make_row(status='calling', provider_call_id='call_new')
        make_call(row=row, provider_call_id='call_old')

        result = apply_call_status_update(organization.id, webhook('call_old', reason='user_hangup'))

        row.refresh_from_db()
        assert result['row_updated'] is False
        assert row.status == 'calling'

    def test_unknown_call(self, organization):
        """Test NotFoundError for calls the org never placed"""
        with pytest.raises(NotFoundError):
            apply_call_status_update(organization.id, webhook('call_missing'))

    def test_missing_call_id(self, organization):
        """Test ValidationError for payloads without a call id"""
        with pytest.raises(ValidationError):
            apply_call_status_update(organization.id, {'event': 'call_ended', 'call': {}})

    def test_registers_call_from_metadata(self, organization, run, make_row):
        """Test a webhook that beats the dispatcher creates the Call from row metadata"""
        row = make_row(status='calling')
        payload = webhook('call_early', event='call_started', status='registered',
                          metadata={'rowId': row.id, 'runId': run.id, 'orgId': organization.id},
                          to_number='+15551112222')

        apply_call_status_update(organization.id, payload)

        call = Call.objects.get(provider_call_id='call_early')
        assert call.row_id == row.id
        assert call.run_id == run.id
        assert call.status == 'in-progress'

    def test_metadata_for_other_org_is_rejected(self, organization, make_row):
        """Test metadata pointing at another org's row is not trusted"""
        row = make_row(status='calling')
        payload = webhook('call_early', metadata={'rowId': row.id, 'orgId': organization.id + 1})

        with pytest.raises(NotFoundError):
            apply_call_status_update(organization.id, payload)


# ============================================================================
# TEST: process_call_webhook task
# ============================================================================

@pytest.mark.django_db
class TestProcessCallWebhook:

    def test_applies_update(self, organization, pending_call):
        """Test the task applies the webhook"""
        result = process_call_webhook(organization.id, webhook('call_abc', event='call_started',
                                                               status='ongoing'))

        assert result['status'] == 'in-progress'
        assert result['event'] == 'call_started'

    def test_unknown_call_is_ignored(self, organization):
        """Test NotFoundError is reported, not raised"""
        result = process_call_webhook(organization.id, webhook('call_missing'))

        assert result['status'] == 'ignored'
        assert result['reason'] == 'call_not_found'

    def test_unexpected_error(self, organization):
        """Test unexpected errors are logged and reported"""
        with patch('events.tasks.apply_call_status_update', side_effect=Exception("boom")), \
                patch('events.tasks.logger') as mock_logger:
            result = process_call_webhook(organization.id, webhook('call_abc'))

        assert result['status'] == 'error'
        assert result['error'] == 'boom'
        mock_logger.exception.assert_called_once()


# ============================================================================
# TEST: provider webhook endpoint
# ============================================================================

@pytest.mark.django_db
class TestProviderWebhookView:

    def _post(self, client, org_id, body):
        return client.post(f'/api/webhooks/provider/{org_id}/', data=body, content_type='application/json')

    def test_known_call_is_queued(self, client, organization, pending_call):
        """Test known calls are acknowledged with 202 and queued"""
        payload = webhook('call_abc')
        with patch('events.views.process_call_webhook') as mock_task:
            response = self._post(client, organization.id, json.dumps(payload))

        assert response.status_code == 202
        assert response.json()['success'] is True
        mock_task.delay.assert_called_once_with(organization.id, payload)

    def test_unknown_call_is_404(self, client, organization):
        """Test unknown calls return 404 and are not queued"""
        with patch('events.views.process_call_webhook') as mock_task:
            response = self._post(client, organization.id, json.dumps(webhook('call_missing')))

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'NOT_FOUND'
        mock_task.delay.assert_not_called()

    def test_invalid_json(self, client, organization):
        """Test malformed bodies return 400"""
        response = self._post(client, organization.id, b'{not json')

        assert response.status_code == 400

    def test_missing_call_id(self, client, organization):
        """Test payloads without call.call_id return 400"""
        response = self._post(client, organization.id, json.dumps({'event': 'call_ended', 'call': {}}))

        assert response.status_code == 400
        assert response.json()['error']['code'] == 'VALIDATION_ERROR'

    def test_get_not_allowed(self, client, organization):
        """Test only POST is accepted"""
        response = client.get(f'/api/webhooks/provider/{organization.id}/')

        assert response.status_code == 405
