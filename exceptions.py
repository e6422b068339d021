class AppError(Exception):
    """Base for errors that map onto an HTTP status and the JSON envelope."""

    status_code = 500

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class ValidationError(AppError):
    """Raised when request input is malformed or references unknown records."""

    status_code = 400

    def __init__(self, message='Validation failed', errors=None):
        self.errors = errors or []
        super().__init__(message)


class ConflictError(AppError):
    """Raised when a write would break a uniqueness rule."""

    status_code = 409


class NotFoundError(AppError):
    status_code = 404


class ForbiddenError(AppError):
    status_code = 403


class InvalidOperationError(AppError):
    """Raised when a business rule forbids the requested change."""

    status_code = 400


class DownstreamDeliveryError(Exception):
    """Raised by an email/SMS/push channel when delivery fails.

    The notification dispatcher catches it; it never reaches an HTTP caller.
    """

    def __init__(self, channel, message):
        self.channel = channel
        super().__init__(f"{channel}: {message}")
