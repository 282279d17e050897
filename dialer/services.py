"""
Inbound run operations.

Every function returns a result dict ({"success": True, "data": ...} or
{"success": False, "error": {...}}) and never raises; views and tasks only
translate those results.
"""

import logging
from datetime import datetime

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from events.notifier import publish_org_event, publish_run_event
from ingestion.pipeline import ingest
from ingestion.schema import FieldSchema
from run_engine.constants import (
    PAUSE_REASON_OFFICE_HOURS, PAUSE_REASON_USER, SCHEDULABLE_RUN_STATUSES, STARTABLE_RUN_STATUSES,
)
from run_engine.exceptions import InvalidStateError, NotFoundError, ValidationError
from run_engine.results import create_success, from_exception
from .metrics import RunMetrics
from .models import Campaign, Row, Run
from .tasks import activate_scheduled_run as activate_scheduled_run_task
from .tasks import process_run
from .utils import count_rows_by_status, get_zone, now_iso

logger = logging.getLogger(__name__)

INGESTIBLE_RUN_STATUSES = ('draft', 'ready')


def _row_priority(variables):
    try:
        return int(float(variables.get('priority')))
    except (TypeError, ValueError, OverflowError):
        return 0


def serialize_run(run):
    return {
        'id': run.id,
        'organization_id': run.organization_id,
        'campaign_id': run.campaign_id,
        'name': run.name,
        'status': run.status,
        'scheduled_at': run.scheduled_at.isoformat() if run.scheduled_at else None,
        'config': run.config,
        'metadata': run.metadata,
        'created_at': run.created_at.isoformat() if run.created_at else None,
        'updated_at': run.updated_at.isoformat() if run.updated_at else None,
    }


def _get_run(run_id, org_id, for_update=False):
    queryset = Run.objects.select_for_update() if for_update else Run.objects.select_related('campaign')
    run = queryset.filter(id=run_id, organization_id=org_id).first()
    if run is None:
        raise NotFoundError(f"Run {run_id} not found")
    return run


def _publish_run_updated(run):
    publish_org_event(run.organization_id, 'run-updated', {
        'runId': run.id,
        'status': run.status,
        'metadata': run.metadata,
    })


# ============================================================================
# RUN CREATION & ROW UPLOAD
# ============================================================================

def create_run(org_id, campaign_id, name, config=None, custom_prompt='', custom_voicemail_message=''):
    try:
        if not name or not str(name).strip():
            raise ValidationError("Run name is required")

        campaign = Campaign.objects.filter(id=campaign_id, organization_id=org_id).first()
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if not campaign.is_active:
            raise InvalidStateError(f"Campaign {campaign_id} is not active")

        metrics = RunMetrics()
        metrics.run.created_at = now_iso()
        run = Run(
            organization_id=org_id,
            campaign=campaign,
            name=str(name).strip(),
            status='draft',
            config=config or {},
            custom_prompt=custom_prompt or '',
            custom_voicemail_message=custom_voicemail_message or '',
        )
        run.set_metrics(metrics)
        run.save()

        logger.info(f"Created run {run.id} for campaign {campaign_id} in org {org_id}")
        return create_success(serialize_run(run))

    except Exception as exc:
        return from_exception(exc, "Failed to create run")


def create_rows_from_ingestion(run, ingestion_result) -> int:
    """Store valid ingested rows on the run and fold the counts into its metrics."""
    with transaction.atomic():
        locked = Run.objects.select_for_update().get(id=run.id)
        start_index = Row.objects.filter(run_id=run.id).count()

        rows = [
            Row(
                run_id=run.id,
                organization_id=run.organization_id,
                patient_id=valid_row['patient_id'],
                variables=valid_row['variables'],
                sort_index=start_index + index,
                priority=_row_priority(valid_row['variables']),
                status='pending',
            )
            for index, valid_row in enumerate(ingestion_result.valid_rows)
        ]
        Row.objects.bulk_create(rows, batch_size=500)

        metrics = locked.metrics
        metrics.increment('rows.total', len(rows))
        metrics.increment('rows.invalid', len(ingestion_result.invalid_rows))
        metrics.increment('calls.pending', len(rows))
        locked.set_metrics(metrics)
        locked.save(update_fields=['metadata', 'updated_at'])

    run.metadata = locked.metadata
    return len(rows)


def ingest_run_file(run_id, org_id, file_bytes, file_name, validate_only=False):
    try:
        run = _get_run(run_id, org_id)
        if not validate_only and run.status not in INGESTIBLE_RUN_STATUSES:
            raise InvalidStateError(f"Cannot upload rows to a run in status {run.status}")

        schema = FieldSchema.from_config((run.campaign.config or {}).get('variables'))
        previous_status = run.status

        if validate_only:
            result = ingest(file_bytes, file_name, field_schema=schema, org_id=org_id, validate_only=True)
            rows_created = 0
        else:
            Run.objects.filter(id=run.id).update(status='processing', updated_at=timezone.now())
            try:
                result = ingest(file_bytes, file_name, field_schema=schema, org_id=org_id)
                rows_created = create_rows_from_ingestion(run, result)
            except Exception:
                Run.objects.filter(id=run.id).update(status=previous_status, updated_at=timezone.now())
                raise

            new_status = 'ready' if Row.objects.filter(run_id=run.id).exists() else previous_status
            Run.objects.filter(id=run.id).update(status=new_status, updated_at=timezone.now())
            run.refresh_from_db()
            _publish_run_updated(run)

        logger.info(f"Uploaded {file_name} to run {run_id}: {rows_created} rows created")
        return create_success({
            'run_id': run.id,
            'validate_only': validate_only,
            'rows_created': rows_created,
            'stats': result.to_dict()['stats'],
            'column_mappings': result.column_mappings,
            'matched_columns': result.matched_columns,
            'unmatched_columns': result.unmatched_columns,
            'sample_rows': result.sample_rows,
            'invalid_rows': result.invalid_rows,
            'errors': result.errors,
        })

    except Exception as exc:
        return from_exception(exc, "Failed to ingest file")


# ============================================================================
# RUN LIFECYCLE
# ============================================================================

def _reset_calling_rows(run):
    reset = 0
    for row in Row.objects.filter(run_id=run.id, status='calling'):
        diagnostics = row.diagnostics
        diagnostics.status_reset = True
        diagnostics.status_reset_at = now_iso()
        reset += Row.objects.filter(id=row.id, status='calling').update(
            status='pending',
            metadata=diagnostics.to_dict(),
            updated_at=timezone.now()
        )
    return reset


def start_run(run_id, org_id):
    try:
        with transaction.atomic():
            run = _get_run(run_id, org_id, for_update=True)
            if run.status not in STARTABLE_RUN_STATUSES:
                raise InvalidStateError(f"Cannot start run in status {run.status}")

            rows_reset = _reset_calling_rows(run)

            metrics = run.metrics
            if not metrics.run.start_time:
                metrics.run.start_time = now_iso()
            metrics.run.pause_reason = None
            run.set_metrics(metrics)
            run.status = 'running'
            run.save(update_fields=['status', 'metadata', 'updated_at'])

        if rows_reset:
            logger.warning(f"Reset {rows_reset} rows left in 'calling' before starting run {run_id}")

        _publish_run_updated(run)
        process_run.delay(run.id, org_id)

        logger.info(f"Run {run_id} started")
        return create_success({**serialize_run(run), 'rows_reset': rows_reset})

    except Exception as exc:
        return from_exception(exc, "Failed to start run")


def pause_run(run_id, org_id):
    try:
        with transaction.atomic():
            run = _get_run(run_id, org_id, for_update=True)
            metrics = run.metrics
            # A user pause takes over an office-hours pause so the loop stops waiting.
            office_hours_paused = run.status == 'paused' and metrics.run.pause_reason == PAUSE_REASON_OFFICE_HOURS
            if run.status != 'running' and not office_hours_paused:
                raise InvalidStateError(f"Cannot pause run in status {run.status}")

            metrics.run.last_paused_at = now_iso()
            metrics.run.pause_reason = PAUSE_REASON_USER
            run.set_metrics(metrics)
            run.status = 'paused'
            run.save(update_fields=['status', 'metadata', 'updated_at'])

        _publish_run_updated(run)
        publish_run_event(run.id, 'run-paused', {
            'reason': PAUSE_REASON_USER,
            'pausedAt': metrics.run.last_paused_at,
        })

        logger.info(f"Run {run_id} paused by user")
        return create_success(serialize_run(run))

    except Exception as exc:
        return from_exception(exc, "Failed to pause run")


def _parse_when(when) -> datetime:
    if isinstance(when, datetime):
        parsed = when
    else:
        parsed = parse_datetime(str(when or '').strip())
        if parsed is None:
            raise ValidationError(f"Invalid schedule time: {when!r}")

    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, get_zone(settings.DEFAULT_TIMEZONE))
    return parsed


def schedule_run(run_id, when, org_id):
    try:
        scheduled_at = _parse_when(when)
        if scheduled_at <= timezone.now():
            raise ValidationError("Scheduled time must be in the future")

        with transaction.atomic():
            run = _get_run(run_id, org_id, for_update=True)
            if run.status not in SCHEDULABLE_RUN_STATUSES:
                raise InvalidStateError(f"Cannot schedule run in status {run.status}")

            metrics = run.metrics
            metrics.run.scheduled_at = scheduled_at.isoformat()
            run.set_metrics(metrics)
            run.status = 'scheduled'
            run.scheduled_at = scheduled_at
            run.save(update_fields=['status', 'scheduled_at', 'metadata', 'updated_at'])

        activate_scheduled_run_task.apply_async(args=[run.id, org_id], eta=scheduled_at)
        _publish_run_updated(run)

        logger.info(f"Run {run_id} scheduled for {scheduled_at.isoformat()}")
        return create_success(serialize_run(run))

    except Exception as exc:
        return from_exception(exc, "Failed to schedule run")


def activate_scheduled_run(run_id, org_id):
    """Start a scheduled run once it is due; a failed start marks the run failed."""
    try:
        run = _get_run(run_id, org_id)
    except Exception as exc:
        return from_exception(exc, "Failed to activate scheduled run")

    if run.status != 'scheduled' or (run.scheduled_at and run.scheduled_at > timezone.now()):
        logger.info(f"Run {run_id} not due for activation (status: {run.status})")
        return create_success({'activated': False, 'status': run.status})

    result = start_run(run_id, org_id)
    if result['success']:
        return create_success({'activated': True, 'run': result['data']})

    reason = result['error']['message']
    logger.error(f"Scheduled activation of run {run_id} failed: {reason}")
    try:
        metrics = run.metrics
        metrics.run.error = reason
        metrics.run.error_time = now_iso()
        run.set_metrics(metrics)
        run.status = 'failed'
        run.save(update_fields=['status', 'metadata', 'updated_at'])

        publish_run_event(run.id, 'run-paused', {'reason': f"Scheduled activation failed: {reason}"})
        _publish_run_updated(run)
    except Exception as exc:
        return from_exception(exc, "Failed to record activation failure")
    return result


def get_run_status(run_id, org_id):
    try:
        run = _get_run(run_id, org_id)
        return create_success({**serialize_run(run), 'row_counts': count_rows_by_status(run.id)})
    except Exception as exc:
        return from_exception(exc, "Failed to load run")
