"""
Typed errors raised by the check-in and settlement services.

Services raise these; the API layer maps each one to an HTTP status through
the handlers in exception_handlers.py.
"""


class CheckInError(Exception):
    """Base class for check-in and settlement failures."""

    code = "checkin_error"
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(CheckInError):
    """Unknown session, pending entry or store."""

    code = "not_found"
    status_code = 404


class ConflictError(CheckInError):
    """An ACTIVE session already exists for the (user, store) pair."""

    code = "conflict"
    status_code = 409


class InvalidStateError(CheckInError):
    """Operation not valid for the current lifecycle state, expiry included."""

    code = "invalid_state"
    status_code = 409


class InvalidArgumentError(CheckInError):
    """Malformed amounts, coordinates or codes."""

    code = "invalid_argument"
    status_code = 400


class BlockedError(CheckInError):
    """The store has blacklisted the customer."""

    code = "blocked"
    status_code = 403


class CollaboratorUnavailableError(CheckInError):
    """
    A remote collaborator timed out or failed.

    Retryable: callers must not read it as "no purchase" or "not credited".
    """

    code = "collaborator_unavailable"
    status_code = 503
