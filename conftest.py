import pytest
import orjson as json
from unittest.mock import patch


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def mock_publish_conn():
    """Mock the Redis connection used for run/org event publication"""
    with patch('events.notifier.conn') as mock:
        yield mock


@pytest.fixture
def published_events(mock_publish_conn):
    """Decoded (channel, event, data) tuples published so far"""
    def _events():
        return [
            (args[0], json.loads(args[1])['event'], json.loads(args[1])['data'])
            for args, _ in mock_publish_conn.publish.call_args_list
        ]
    return _events


@pytest.fixture
def organization(db):
    from dialer.models import Organization

    return Organization.objects.create(
        name='Riverside Clinic',
        phone='+15550000000',
        timezone='America/New_York',
        concurrent_call_limit=20,
    )


@pytest.fixture
def campaign(organization):
    from dialer.models import Campaign

    return Campaign.objects.create(organization=organization, name='Annual Recall', agent_id='agent_123')


@pytest.fixture
def run(organization, campaign):
    from dialer.metrics import RunMetrics
    from dialer.models import Run

    metrics = RunMetrics()
    metrics.run.start_time = '2025-03-03T14:00:00+00:00'
    return Run.objects.create(
        organization=organization,
        campaign=campaign,
        name='March Recall',
        status='running',
        metadata=metrics.to_dict(),
    )


@pytest.fixture
def make_row(run):
    from dialer.models import Row

    counter = {'index': 0}

    def _make(**kwargs):
        counter['index'] += 1
        defaults = {
            'run': run,
            'organization': run.organization,
            'variables': {'firstName': 'Pat', 'lastName': f'Row{counter["index"]}',
                          'phone': f'+1555000{counter["index"]:04d}'},
            'sort_index': counter['index'],
        }
        defaults.update(kwargs)
        return Row.objects.create(**defaults)
    return _make


@pytest.fixture
def make_call(run):
    from dialer.models import Call

    def _make(row=None, **kwargs):
        defaults = {
            'organization': run.organization,
            'run': run,
            'row': row,
            'campaign': run.campaign,
            'to_number': '+15550001111',
            'status': 'pending',
        }
        defaults.update(kwargs)
        return Call.objects.create(**defaults)
    return _make
