class DomainError(Exception):
    """Base class for failures callers are expected to handle."""

    status_code = 400
    default_code = "DOMAIN_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class InputRejected(DomainError):
    status_code = 400
    default_code = "INPUT_REJECTED"


class NotFound(DomainError):
    status_code = 404
    default_code = "NOT_FOUND"


class InvalidTransition(DomainError):
    status_code = 409
    default_code = "INVALID_TRANSITION"


class Conflict(DomainError):
    """A concurrent writer got there first (lost compare-and-set or a taken slot)."""

    status_code = 409
    default_code = "CONFLICT"


class DirectionsError(Exception):
    """The directions lookup failed; the tracker falls back to straight-line estimates."""
