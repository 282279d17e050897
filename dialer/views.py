"""
API views for run management.

Thin JSON wrappers over dialer.services; each service result maps to an
HTTP status through run_engine.results.http_status_for.
"""

import logging

import orjson as json
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from run_engine.results import create_error, http_status_for
from . import services

logger = logging.getLogger(__name__)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _respond(result, success_status=200):
    status = success_status if result.get('success') else http_status_for(result)
    return JsonResponse(result, status=status)


def _bad_request(message):
    return JsonResponse(create_error('BAD_REQUEST', message), status=400)


def _load_body(request):
    if not request.body:
        return {}
    return json.loads(request.body)


@csrf_exempt
@require_http_methods(["POST"])
def create_run(request):
    """
    Create a draft run for a campaign.

    POST /api/runs/create/
    {
        "org_id": 1,
        "campaign_id": 3,
        "name": "March recalls",
        "config": {"calls_per_minute": 12, "max_retries": 2}
    }
    """
    try:
        data = _load_body(request)
    except json.JSONDecodeError:
        return _bad_request('Invalid JSON')

    if not all([data.get('org_id'), data.get('campaign_id'), data.get('name')]):
        return _bad_request('Missing required fields: org_id, campaign_id, name')

    result = services.create_run(
        org_id=data['org_id'],
        campaign_id=data['campaign_id'],
        name=data['name'],
        config=data.get('config'),
        custom_prompt=data.get('custom_prompt', ''),
        custom_voicemail_message=data.get('custom_voicemail_message', ''),
    )
    return _respond(result, success_status=201)


@csrf_exempt
@require_http_methods(["POST"])
def upload_rows(request, run_id):
    """
    Upload a CSV/Excel file of contacts to a run.

    POST /api/runs/<run_id>/upload/
    Form data:
    - org_id: Organization ID
    - file: CSV or Excel file
    - validate_only: optional, "true" to dry-run without creating rows or patients
    """
    org_id = request.POST.get('org_id')
    upload = request.FILES.get('file')
    if not all([org_id, upload]) or not org_id.isdigit():
        return _bad_request('Missing required fields: org_id, file')

    validate_only = request.POST.get('validate_only', '').lower() in TRUE_VALUES
    result = services.ingest_run_file(
        run_id=run_id,
        org_id=int(org_id),
        file_bytes=upload.read(),
        file_name=upload.name,
        validate_only=validate_only,
    )
    return _respond(result)


def _org_action(request, run_id, action):
    try:
        data = _load_body(request)
    except json.JSONDecodeError:
        return _bad_request('Invalid JSON')

    org_id = data.get('org_id')
    if not org_id:
        return _bad_request('Missing required field: org_id')
    return _respond(action(run_id=run_id, org_id=org_id))


@csrf_exempt
@require_http_methods(["POST"])
def start_run(request, run_id):
    """POST /api/runs/<run_id>/start/ {"org_id": 1}"""
    return _org_action(request, run_id, services.start_run)


@csrf_exempt
@require_http_methods(["POST"])
def pause_run(request, run_id):
    """POST /api/runs/<run_id>/pause/ {"org_id": 1}"""
    return _org_action(request, run_id, services.pause_run)


@csrf_exempt
@require_http_methods(["POST"])
def schedule_run(request, run_id):
    """
    POST /api/runs/<run_id>/schedule/
    {"org_id": 1, "scheduled_at": "2026-03-02T09:00:00-05:00"}
    """
    try:
        data = _load_body(request)
    except json.JSONDecodeError:
        return _bad_request('Invalid JSON')

    if not all([data.get('org_id'), data.get('scheduled_at')]):
        return _bad_request('Missing required fields: org_id, scheduled_at')

    result = services.schedule_run(run_id=run_id, when=data['scheduled_at'], org_id=data['org_id'])
    return _respond(result)


@require_http_methods(["GET"])
def run_status(request, run_id):
    """GET /api/runs/<run_id>/?org_id=1"""
    org_id = request.GET.get('org_id')
    if not org_id or not org_id.isdigit():
        return _bad_request('Missing required parameter: org_id')
    return _respond(services.get_run_status(run_id=run_id, org_id=int(org_id)))
