from typing import Any


class AppException(Exception):
    """Base application exception.

    Keyword arguments are kept on ``context`` so callers can inspect entity
    ids, amounts and statuses when deciding whether to retry.
    """

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppException):
    """Resource not found exception."""

    pass


class ValidationError(AppException):
    """Validation error exception."""

    pass


class StateConflictError(AppException):
    """Operation is not valid for the entity's current status."""

    pass


class RefundWindowError(StateConflictError):
    """Refund requested after the configured refund window closed."""

    pass


class InsufficientCreditsError(AppException):
    """Available credit balance is too low for the requested amount."""

    pass


class ExternalServiceError(AppException):
    """A payment provider call failed or timed out."""

    pass


class SignatureError(AppException):
    """Webhook signature verification failed."""

    pass
