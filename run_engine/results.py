import logging

from .exceptions import RunEngineError

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_CODE = {
    'NOT_FOUND': 404,
    'BAD_REQUEST': 400,
    'VALIDATION_ERROR': 400,
    'CONFLICT': 409,
    'UNAUTHORIZED': 401,
    'FORBIDDEN': 403,
}


def create_success(data):
    return {'success': True, 'data': data}


def create_error(code, message, details=None):
    error = {'code': code, 'message': message}
    if details is not None:
        error['details'] = details
    return {'success': False, 'error': error}


def from_exception(exc, fallback_message='An unexpected error occurred'):
    if isinstance(exc, RunEngineError):
        return create_error(exc.code, exc.message, exc.details)

    logger.exception(f"Unhandled service error: {exc}")
    return create_error('INTERNAL_ERROR', fallback_message)


def http_status_for(result):
    if result.get('success'):
        return 200
    return HTTP_STATUS_BY_CODE.get(result['error']['code'], 500)
