import logging
from typing import Dict, Optional

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from dialer.metrics import call_outcome_deltas
from dialer.models import Call, Row
from dialer.utils import complete_run
from run_engine.constants import TERMINAL_CALL_STATUSES
from run_engine.exceptions import NotFoundError, ValidationError
from .notifier import publish_org_event, publish_run_event, record_run_metrics

logger = logging.getLogger(__name__)

PROVIDER_TO_CALL_STATUS = {
    # Live
    'registered': 'in-progress',
    'ongoing': 'in-progress',

    # Finished, refined by disconnection_reason
    'ended': 'completed',
    'completed': 'completed',

    # Failed
    'error': 'failed',
    'failed': 'failed',
    'not_connected': 'failed',
}

DISCONNECTION_TO_CALL_STATUS = {
    'voicemail_reached': 'voicemail',
    'dial_no_answer': 'no-answer',
    'dial_busy': 'failed',
    'dial_failed': 'failed',
    'invalid_destination': 'failed',
}

# call_status is sometimes omitted; fall back on what the event implies
EVENT_DEFAULT_STATUS = {
    'call_started': 'ongoing',
    'call_ended': 'ended',
}

STATUS_RANK = {
    'pending': 0,
    'in-progress': 1,
    'completed': 2,
    'failed': 2,
    'voicemail': 2,
    'no-answer': 2,
}


def map_call_status(provider_status, disconnection_reason=None) -> Optional[str]:
    status = PROVIDER_TO_CALL_STATUS.get(provider_status)
    if status == 'completed' and disconnection_reason:
        if disconnection_reason.startswith('error_'):
            return 'failed'
        return DISCONNECTION_TO_CALL_STATUS.get(disconnection_reason, 'completed')
    return status


def get_call_payload(payload) -> Dict:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    call_data = payload.get('call')
    if not isinstance(call_data, dict) or not call_data.get('call_id'):
        raise ValidationError("Webhook payload has no call.call_id")
    return call_data


# ============================================================================
# CALL LOOKUP
# ============================================================================

def _row_from_metadata(org_id, call_data) -> Optional[Row]:
    metadata = call_data.get('metadata') or {}
    row_id = metadata.get('rowId')
    if not row_id or str(metadata.get('orgId')) != str(org_id):
        return None
    return Row.objects.select_related('run').filter(id=row_id, organization_id=org_id).first()


def is_known_call(org_id, payload) -> bool:
    """True when the webhook refers to a call this org placed (or is placing)."""
    call_data = get_call_payload(payload)
    if Call.objects.filter(provider_call_id=call_data['call_id'], organization_id=org_id).exists():
        return True
    return _row_from_metadata(org_id, call_data) is not None


def _register_call_from_metadata(org_id, call_data) -> Optional[Call]:
    """
    Create the Call record for a webhook that beat the dispatcher to it, using
    the row/run ids the dispatcher sent as provider metadata.
    """
    row = _row_from_metadata(org_id, call_data)
    if row is None:
        return None

    call, created = Call.objects.get_or_create(
        provider_call_id=call_data['call_id'],
        defaults={
            'organization_id': org_id,
            'run_id': row.run_id,
            'row': row,
            'patient_id': row.patient_id,
            'campaign_id': row.run.campaign_id,
            'agent_id': call_data.get('agent_id') or '',
            'direction': call_data.get('direction') or 'outbound',
            'status': 'pending',
            'to_number': call_data.get('to_number') or '',
            'from_number': call_data.get('from_number') or '',
        },
    )
    if created:
        logger.warning(f"Registered call {call.provider_call_id} from webhook metadata for row {row.id}")
    return call


# ============================================================================
# STATUS UPDATES
# ============================================================================

def apply_call_status_update(org_id, payload) -> Dict:
    """
    Apply a provider webhook to the Call, its Row and the run metrics.

    Idempotent and order tolerant: a status that does not move the call
    forward is ignored, while analysis, recording and transcript still merge.
    Raises NotFoundError for calls this org never placed.
    """
    call_data = get_call_payload(payload)
    provider_call_id = call_data['call_id']
    disconnection_reason = call_data.get('disconnection_reason')
    provider_status = call_data.get('call_status') or EVENT_DEFAULT_STATUS.get(payload.get('event'))
    new_status = map_call_status(provider_status, disconnection_reason)
    analysis = call_data.get('call_analysis') or {}

    with transaction.atomic():
        call = (
            Call.objects
            .select_for_update()
            .filter(provider_call_id=provider_call_id, organization_id=org_id)
            .first()
        )
        if call is None:
            call = _register_call_from_metadata(org_id, call_data)
            if call is None:
                raise NotFoundError(f"Call {provider_call_id} not found")

        previous_status = call.status
        details_changed = False
        if analysis:
            call.analysis = {**(call.analysis or {}), **analysis}
            details_changed = True
        if call_data.get('recording_url'):
            call.recording_url = call_data['recording_url']
            details_changed = True
        if call_data.get('transcript'):
            call.transcript = call_data['transcript']
            details_changed = True

        transition = new_status is not None and STATUS_RANK[new_status] > STATUS_RANK.get(previous_status, 0)
        if transition:
            call.status = new_status
            if new_status == 'failed':
                call.error = disconnection_reason or "Call failed"

        if not transition and not details_changed:
            logger.info(f"Ignoring {payload.get('event')} for call {provider_call_id}: already {previous_status}")
            return {'call_id': call.id, 'status': previous_status, 'updated': False}

        call.save()

        terminal = transition and new_status in TERMINAL_CALL_STATUSES
        row_updated = 0
        if terminal and call.row_id:
            row_status = 'failed' if new_status == 'failed' else 'completed'
            row_updated = (
                Row.objects
                .filter(id=call.row_id, status='calling')
                .filter(Q(provider_call_id__isnull=True) | Q(provider_call_id=provider_call_id))
                .update(
                    status=row_status,
                    error=(disconnection_reason or "Call failed") if row_status == 'failed' else None,
                    updated_at=timezone.now()
                )
            )

        if terminal and call.run_id:
            record_run_metrics(call.run_id, call_outcome_deltas(new_status, call.analysis))

    event_data = {
        'callId': call.id,
        'providerCallId': provider_call_id,
        'status': call.status,
        'previousStatus': previous_status,
        'rowId': call.row_id,
        'runId': call.run_id,
    }
    publish_org_event(org_id, 'call-updated', event_data)
    if call.run_id:
        publish_run_event(call.run_id, 'call-updated', event_data)

    if terminal and call.run_id:
        try:
            complete_run(call.run_id)
        except Exception as e:
            logger.exception(f"Error checking completion of run {call.run_id}: {e}")

    logger.info(f"Call {provider_call_id}: {previous_status} -> {call.status}")
    return {
        'call_id': call.id,
        'status': call.status,
        'previous_status': previous_status,
        'updated': True,
        'row_updated': bool(row_updated),
    }
