"""
Typed failures raised across the run engine.

Each error carries the result code that `run_engine.results` reports back to
callers, so services can turn any of them into an error payload without a
lookup table.
"""


class RunEngineError(Exception):
    code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ParseError(RunEngineError):
    """Uploaded file could not be read into a header plus records."""
    code = 'BAD_REQUEST'


class ValidationError(RunEngineError):
    code = 'VALIDATION_ERROR'


class NotFoundError(RunEngineError):
    code = 'NOT_FOUND'


class ProviderError(RunEngineError):
    """The call provider rejected or failed to place a call."""
    code = 'PROVIDER_ERROR'


class PersistenceError(RunEngineError):
    code = 'INTERNAL_ERROR'


class ConcurrencyConflict(RunEngineError):
    """An optimistic claim was lost to another dispatcher."""
    code = 'CONFLICT'


class InvalidStateError(RunEngineError):
    code = 'BAD_REQUEST'
