from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    code = "app_error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class UnauthenticatedError(AppError):
    code = "unauthenticated"


class NotFoundError(AppError):
    code = "not_found"


class ForbiddenError(AppError):
    code = "forbidden"


class NotParticipantError(ForbiddenError):
    pass


class NotOwnerError(ForbiddenError):
    pass


class ConflictError(AppError):
    code = "conflict"


class ValidationError(AppError):
    code = "invalid_input"


class InvalidReplyTargetError(ValidationError):
    pass


class DeliveryFailure(AppError):
    """A push to one live connection failed. Logged, never raised to publishers."""

    code = "delivery_failure"
