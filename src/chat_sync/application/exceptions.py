from __future__ import annotations

UNIQUE_VIOLATION = "23505"


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class NotFoundError(AppError):
    pass


class ForbiddenError(AppError):
    pass


class ValidationError(AppError):
    pass


class BackendError(AppError):
    """Structured error returned by a backend request/response call."""

    def __init__(self, detail: str = "", *, code: str | None = None) -> None:
        super().__init__(detail)
        self.code = code

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


class NotSubscribedError(AppError):
    """Operation needs a conversation but ``subscribe`` was never called."""


class InvalidTransitionError(AppError):
    """A connection state change that the lifecycle does not allow."""
