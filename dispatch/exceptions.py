class DispatchError(Exception):
    """Base class for failures surfaced to a connection."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(DispatchError):
    """A required field is missing or malformed."""
    default_message = "Invalid payload"


class NotFoundError(DispatchError):
    """Unknown vehicle or request identifier."""
    default_message = "Not found"


class RequestUnavailable(DispatchError):
    """The request was already claimed, cancelled or never cached."""
    default_message = "Request no longer available"


class StoreError(DispatchError):
    """The durable record store failed."""
    default_message = "Failed to process request"


class InvalidCredential(DispatchError):
    default_message = "Authentication failed"


class AuthorizationError(DispatchError):
    default_message = "Unauthorized"
