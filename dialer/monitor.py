"""
Consistency sweeps for rows the dispatch loop can no longer see.

Both sweeps are idempotent and safe to run next to a live dispatch loop:
- reconcile_missed_webhooks: the Call reached a terminal status but the Row
  is still `calling` (the provider webhook never arrived)
- reset_stuck_rows: the Row has been `calling` for longer than the staleness
  threshold and nothing resolved it
"""

import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from events.notifier import publish_run_event, record_run_metrics
from run_engine.constants import ACTIVE_CALL_STATUSES, STUCK_ROW_THRESHOLD_SECONDS, TERMINAL_CALL_STATUSES
from .metrics import call_outcome_deltas
from .models import Call, Row
from .utils import now_iso

logger = logging.getLogger(__name__)

STUCK_RESET_ERROR = "Reset from stuck 'calling' state"
WEBHOOK_FIX_REASON = "Webhook update failed - fixed by monitoring"
STALE_CALL_ERROR = "Stale: no webhook received"

CALL_TO_ROW_STATUS = {
    'completed': 'completed',
    'voicemail': 'completed',
    'no-answer': 'completed',
    'failed': 'failed',
}


def _record(run_id, deltas, debouncer):
    if debouncer is None:
        record_run_metrics(run_id, deltas)
        return
    for path, amount in deltas.items():
        debouncer.increment(run_id, path, amount)


def reset_stuck_rows(run_id, threshold_seconds=STUCK_ROW_THRESHOLD_SECONDS, debouncer=None) -> int:
    cutoff = timezone.now() - timedelta(seconds=threshold_seconds)
    stuck_rows = list(Row.objects.filter(run_id=run_id, status='calling', updated_at__lt=cutoff))
    if not stuck_rows:
        return 0

    reset_count = 0
    closed_calls = 0
    for row in stuck_rows:
        diagnostics = row.diagnostics
        diagnostics.stuck_in_calling = True
        diagnostics.previous_reset_time = diagnostics.reset_time
        diagnostics.reset_time = now_iso()
        diagnostics.reset_count += 1

        with transaction.atomic():
            # Conditional on `calling` so a webhook landing mid-sweep wins.
            updated = Row.objects.filter(id=row.id, status='calling').update(
                status='pending',
                error=STUCK_RESET_ERROR,
                metadata=diagnostics.to_dict(),
                updated_at=timezone.now(),
            )
            if not updated:
                continue
            # Active calls count against concurrency; close them with the row.
            closed_calls += Call.objects.filter(row_id=row.id, status__in=ACTIVE_CALL_STATUSES).update(
                status='failed',
                error=STALE_CALL_ERROR,
                updated_at=timezone.now(),
            )

        reset_count += 1
        if diagnostics.reset_count > 1:
            logger.warning(f"Row {row.id} has been reset from stuck state {diagnostics.reset_count} times")

    if reset_count:
        logger.warning(f"Reset {reset_count} rows stuck in 'calling' for run {run_id} ({closed_calls} stale calls closed)")
        deltas = {'rows.reset': reset_count}
        if closed_calls:
            deltas['calls.calling'] = -closed_calls
        _record(run_id, deltas, debouncer)
        publish_run_event(run_id, 'metrics-updated', {
            'run_id': run_id,
            'rows': {'reset': reset_count},
        })
    return reset_count


def reconcile_missed_webhooks(run_id, debouncer=None) -> int:
    calls = (
        Call.objects
        .filter(run_id=run_id, status__in=TERMINAL_CALL_STATUSES, row__status='calling')
        .filter(row__provider_call_id=F('provider_call_id'))
        .select_related('row')
    )

    fixed = 0
    for call in calls:
        row = call.row
        diagnostics = row.diagnostics
        diagnostics.manually_fixed = True
        diagnostics.fixed_at = now_iso()
        diagnostics.previous_status = row.status
        diagnostics.fix_reason = WEBHOOK_FIX_REASON
        diagnostics.call_status = call.status

        row_status = CALL_TO_ROW_STATUS[call.status]
        updated = Row.objects.filter(id=row.id, status='calling').update(
            status=row_status,
            error=(call.error or "Call failed") if row_status == 'failed' else None,
            metadata=diagnostics.to_dict(),
            updated_at=timezone.now(),
        )
        if updated:
            fixed += 1
            logger.warning(f"Row {row.id} fixed from call {call.provider_call_id} status {call.status} (missed webhook)")
            _record(run_id, call_outcome_deltas(call.status, call.analysis), debouncer)
    return fixed


def run_consistency_checks(run_id, debouncer=None):
    fixed = reconcile_missed_webhooks(run_id, debouncer=debouncer)
    reset = reset_stuck_rows(run_id, debouncer=debouncer)
    return {'webhook_fixes': fixed, 'stuck_resets': reset}
