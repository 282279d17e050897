"""
Events Tasks - provider webhook processing

Webhooks are acknowledged by the view and applied here, off the request path.
"""

import logging

from django.utils import timezone

from CELERY_INIT import app
from run_engine.exceptions import NotFoundError
from .utils import apply_call_status_update

logger = logging.getLogger(__name__)


# ============================================================================
# MAIN EVENT PROCESSING ENTRY POINT
# ============================================================================

@app.task(bind=True)
def process_call_webhook(self, org_id, payload):
    event = (payload or {}).get('event')
    try:
        result = apply_call_status_update(org_id, payload)
        result['event'] = event
        return result

    except NotFoundError as e:
        logger.warning(f"Webhook {event} for org {org_id} ignored: {e}")
        return {
            'status': 'ignored',
            'reason': 'call_not_found',
            'timestamp': timezone.now().isoformat()
        }

    except Exception as exc:
        logger.exception(f"Error processing {event} webhook for org {org_id}: {exc}")
        return {
            'status': 'error',
            'error': str(exc),
            'timestamp': timezone.now().isoformat()
        }
