import logging

import orjson as json
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from run_engine.exceptions import RunEngineError
from run_engine.results import create_error, create_success, from_exception, http_status_for
from .tasks import process_call_webhook
from .utils import is_known_call

logger = logging.getLogger(__name__)


@csrf_exempt
@require_http_methods(["POST"])
def provider_webhook(request, org_id):
    """
    Receive a call event from the voice provider.

    POST /api/webhooks/provider/<org_id>/
    {"event": "call_ended", "call": {"call_id": "...", "call_status": "ended", ...}}
    """
    try:
        payload = json.loads(request.body)
    except json.JSONDecodeError:
        return JsonResponse(create_error('BAD_REQUEST', 'Invalid JSON'), status=400)

    try:
        if not is_known_call(org_id, payload):
            call_id = payload['call']['call_id']
            logger.warning(f"Webhook for unknown call {call_id} in org {org_id}")
            return JsonResponse(create_error('NOT_FOUND', f"Call {call_id} not found"), status=404)
    except RunEngineError as exc:
        result = from_exception(exc)
        return JsonResponse(result, status=http_status_for(result))

    process_call_webhook.delay(org_id, payload)
    return JsonResponse(create_success({'queued': True, 'event': payload.get('event')}), status=202)
