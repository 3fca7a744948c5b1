"""
Error kinds raised by the lunchbox domain layer.

The web layer turns every LunchboxError into a JSON body of the form
{"ok": false, "error": <message>} using the ``http_status`` of the kind.
Only Conflict and BackendTimeout are safe to retry, and only after the
caller has re-read the current state of the record.
"""


class LunchboxError(RuntimeError):
    """Base class for all domain errors."""

    http_status = 500
    retryable = False

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(LunchboxError):
    """Malformed or missing input (e.g. delivery date not in the future)."""

    http_status = 400


class AuthorizationError(LunchboxError):
    """The acting user may not touch this record."""

    http_status = 403


class NotFound(LunchboxError):
    """Unknown identifier or tracking code."""

    http_status = 404


class InvalidTransition(LunchboxError):
    """Status change not permitted from the current state or for this actor."""

    http_status = 400


class Conflict(LunchboxError):
    """The stored state moved on before our conditional update was applied."""

    http_status = 409
    retryable = True


class BackendTimeout(LunchboxError):
    """The database did not answer within the configured timeout."""

    http_status = 504
    retryable = True
