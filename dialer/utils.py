import logging
import traceback
from datetime import datetime
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from events.notifier import publish_org_event, publish_run_event
from run_engine.constants import (
    ACTIVE_CALL_STATUSES, DEFAULT_CALL_END_HOUR, DEFAULT_CALL_START_HOUR, DEFAULT_CALLS_PER_MINUTE,
    DEFAULT_MAX_RETRIES, MIN_CALL_SPACING_SECONDS, OPEN_ROW_STATUSES, PAUSE_REASON_OFFICE_HOURS,
)
from run_engine.exceptions import ConcurrencyConflict
from .models import Call, Row, Run

logger = logging.getLogger(__name__)

PHONE_VARIABLE_KEYS = ('phone', 'primaryPhone', 'phoneNumber')
ALWAYS_OPEN = ('00:00', '23:59')
NEVER_OPEN = ('00:00', '00:00')


def now_iso():
    return timezone.now().isoformat()


def get_zone(name) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to {settings.DEFAULT_TIMEZONE}")
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


# ============================================================================
# RUN CONFIGURATION
# ============================================================================

def get_calls_per_minute(run) -> float:
    value = (run.config or {}).get('calls_per_minute') or DEFAULT_CALLS_PER_MINUTE
    return max(float(value), 0.001)


def call_spacing_seconds(run) -> float:
    return max(MIN_CALL_SPACING_SECONDS, 60.0 / get_calls_per_minute(run))


def get_max_retries(run) -> int:
    value = (run.config or {}).get('max_retries')
    return DEFAULT_MAX_RETRIES if value is None else int(value)


def get_run_concurrency_limit(run, organization) -> int:
    value = (run.config or {}).get('concurrency_limit')
    return int(value) if value else organization.concurrent_call_limit


# ============================================================================
# OFFICE HOURS
# ============================================================================

def _minutes(hhmm) -> int:
    hours, minutes = str(hhmm).split(':')[:2]
    return int(hours) * 60 + int(minutes)


def is_within_office_hours(organization, now: Optional[datetime] = None) -> bool:
    """
    Check the organization's weekday window in its own timezone.

    No configuration at all means always open; a day missing from a
    configuration means closed. 00:00-00:00 is never, 00:00-23:59 is always,
    and other windows include both boundaries.
    """
    office_hours = organization.office_hours or {}
    if not office_hours:
        return True

    local = (now or timezone.now()).astimezone(get_zone(organization.timezone))
    window = office_hours.get(local.strftime('%A').lower())
    if not window:
        return False

    start, end = window.get('start'), window.get('end')
    if not start or not end:
        return False
    if (start, end) == NEVER_OPEN:
        return False
    if (start, end) == ALWAYS_OPEN:
        return True

    try:
        minute_of_day = local.hour * 60 + local.minute
        return _minutes(start) <= minute_of_day <= _minutes(end)
    except ValueError:
        logger.error(f"Malformed office hours for org {organization.id}: {window}")
        return False


def is_within_patient_hours(run, organization, variables, now: Optional[datetime] = None) -> bool:
    config = run.config or {}
    start_hour = config.get('call_start_hour')
    end_hour = config.get('call_end_hour')
    start_hour = DEFAULT_CALL_START_HOUR if start_hour is None else int(start_hour)
    end_hour = DEFAULT_CALL_END_HOUR if end_hour is None else int(end_hour)
    zone = get_zone(variables.get('timezone') or organization.timezone)
    hour = (now or timezone.now()).astimezone(zone).hour
    return start_hour <= hour < end_hour


# ============================================================================
# CAPACITY & CLAIMING
# ============================================================================

def get_available_capacity(run, organization) -> int:
    org_active = Call.objects.filter(organization=organization, status__in=ACTIVE_CALL_STATUSES).count()
    run_active = Call.objects.filter(run=run, status__in=ACTIVE_CALL_STATUSES).count()
    org_limit = organization.concurrent_call_limit
    run_limit = get_run_concurrency_limit(run, organization)
    logger.debug(f"Active calls - run {run.id}: {run_active}, org {organization.id}: {org_active}")
    return min(org_limit - org_active, run_limit - run_active)


def claim_row(row_id):
    """pending -> calling as one conditional UPDATE; raises ConcurrencyConflict when the row was taken."""
    updated = Row.objects.filter(id=row_id, status='pending').update(
        status='calling',
        updated_at=timezone.now()
    )
    if not updated:
        raise ConcurrencyConflict(f"Row {row_id} is no longer pending")


def has_open_rows(run_id) -> bool:
    return Row.objects.filter(run_id=run_id, status__in=OPEN_ROW_STATUSES).exists()


def count_rows_by_status(run_id) -> Dict[str, int]:
    counts = {status: 0 for status, _ in Row.STATUS_CHOICES}
    for status in Row.objects.filter(run_id=run_id).values_list('status', flat=True):
        counts[status] = counts.get(status, 0) + 1
    counts['total'] = sum(counts.values())
    return counts


# ============================================================================
# CALL PAYLOAD
# ============================================================================

def resolve_row_phone(variables) -> Optional[str]:
    for key in PHONE_VARIABLE_KEYS:
        value = variables.get(key)
        if value not in (None, ''):
            return str(value)
    return None


def build_call_variables(row, run, organization, campaign, patient=None) -> Dict[str, str]:
    """Row variables plus run/org context, stringified for the provider; None values are dropped."""
    variables = row.variables or {}
    first_name = patient.first_name if patient else variables.get('firstName')
    last_name = patient.last_name if patient else variables.get('lastName')
    phone = patient.primary_phone if patient else resolve_row_phone(variables)

    merged = {
        **variables,
        'custom_prompt': run.custom_prompt or None,
        'organization_name': organization.name,
        'campaign_name': campaign.name,
        'retry_count': row.retry_count,
        'patient_first_name': first_name,
        'patient_last_name': last_name,
        'patient_phone': phone,
        'first_name': first_name,
        'last_name': last_name,
        'phone': phone,
    }
    return {key: str(value) for key, value in merged.items() if value is not None}


def build_call_metadata(row, run, organization, campaign, patient_id=None) -> Dict:
    return {
        'runId': run.id,
        'rowId': row.id,
        'orgId': organization.id,
        'campaignId': campaign.id,
        'patientId': patient_id,
        'timezone': (row.variables or {}).get('timezone') or organization.timezone or settings.DEFAULT_TIMEZONE,
    }


def find_recent_call_for_row(row_id, since) -> Optional[Call]:
    return Call.objects.filter(row_id=row_id, created_at__gte=since).order_by('-created_at').first()


# ============================================================================
# RUN STATE TRANSITIONS
# ============================================================================

def pause_for_office_hours(run) -> bool:
    with transaction.atomic():
        locked = Run.objects.select_for_update().filter(id=run.id).first()
        if locked is None or locked.status != 'running':
            return False
        metrics = locked.metrics
        metrics.run.last_paused_at = now_iso()
        metrics.run.pause_reason = PAUSE_REASON_OFFICE_HOURS
        locked.set_metrics(metrics)
        locked.status = 'paused'
        locked.save(update_fields=['status', 'metadata', 'updated_at'])

    run.status = locked.status
    run.metadata = locked.metadata
    publish_run_event(run.id, 'run-paused', {
        'reason': PAUSE_REASON_OFFICE_HOURS,
        'pausedAt': metrics.run.last_paused_at,
    })
    publish_org_event(run.organization_id, 'run-updated', {
        'runId': run.id,
        'status': 'paused',
        'metadata': run.metadata,
    })
    return True


def resume_from_office_hours(run) -> bool:
    with transaction.atomic():
        locked = Run.objects.select_for_update().filter(id=run.id).first()
        # A user pause issued during the wait must stick.
        if locked is None or locked.status != 'paused' or \
                locked.metrics.run.pause_reason != PAUSE_REASON_OFFICE_HOURS:
            return False
        metrics = locked.metrics
        metrics.run.pause_reason = None
        locked.set_metrics(metrics)
        locked.status = 'running'
        locked.save(update_fields=['status', 'metadata', 'updated_at'])

    run.status = locked.status
    run.metadata = locked.metadata
    publish_org_event(run.organization_id, 'run-updated', {
        'runId': run.id,
        'status': 'running',
        'metadata': run.metadata,
    })
    return True


def complete_run(run_id) -> bool:
    """
    Move a running run with no open rows to completed.

    Returns False without touching anything when the run is not running any
    more or still has pending/calling rows.
    """
    with transaction.atomic():
        run = Run.objects.select_for_update().filter(id=run_id).first()
        if run is None or run.status != 'running':
            return False
        if has_open_rows(run_id):
            return False

        counts = count_rows_by_status(run_id)
        metrics = run.metrics
        end_time = timezone.now()
        metrics.run.end_time = end_time.isoformat()
        if metrics.run.start_time:
            start_time = datetime.fromisoformat(metrics.run.start_time)
            metrics.run.duration = int((end_time - start_time).total_seconds())
        metrics.run.final_counts = {
            'total': counts['total'],
            'completed': counts['completed'],
            'failed': counts['failed'],
            'skipped': counts['skipped'],
        }
        run.set_metrics(metrics)
        run.status = 'completed'
        run.save(update_fields=['status', 'metadata', 'updated_at'])

    logger.info(f"Run {run_id} completed: {metrics.run.final_counts}")
    publish_org_event(run.organization_id, 'run-updated', {
        'runId': run.id,
        'status': 'completed',
        'metadata': run.metadata,
    })
    return True


def fail_run(run_id, exc):
    with transaction.atomic():
        run = Run.objects.select_for_update().filter(id=run_id).first()
        if run is None:
            return False

        metrics = run.metrics
        metrics.run.error = str(exc)
        metrics.run.error_stack = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        metrics.run.error_time = now_iso()
        run.set_metrics(metrics)
        run.status = 'failed'
        run.save(update_fields=['status', 'metadata', 'updated_at'])

    publish_org_event(run.organization_id, 'run-updated', {
        'runId': run.id,
        'status': 'failed',
        'error': str(exc),
    })
    return True
