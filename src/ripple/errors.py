"""Error taxonomy for ripple.

Every error raised by the core components derives from RippleError and
carries a stable ``code`` that the gateway sends to clients and the HTTP
layer maps to a status code.
"""


class RippleError(Exception):
    """Base class for all ripple errors."""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class Unauthorized(RippleError):
    """Actor lacks the required room or message permission."""

    code = "unauthorized"


class InvalidCredential(Unauthorized):
    """The credential presented at authentication time was rejected."""

    code = "invalid_credential"


class ValidationError(RippleError):
    """Malformed or empty payload."""

    code = "validation_error"


class NotFound(RippleError):
    """Referenced room, message or user is absent."""

    code = "not_found"


class Conflict(RippleError):
    """Operation conflicts with current state (duplicate join, deleted message)."""

    code = "conflict"


class PersistenceError(RippleError):
    """Storage is unavailable or the write failed."""

    code = "persistence_error"


class BusUnavailable(RippleError):
    """The fan-out medium could not be reached."""

    code = "bus_unavailable"
