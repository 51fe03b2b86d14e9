"""Typed domain errors.

Every error carries the HTTP status the API layer should answer with and a
``context`` dict with the values that explain the failure.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(AppError):
    status_code = 404


class VaccineNotFoundError(NotFoundError):
    def __init__(self, vaccine_id: str) -> None:
        super().__init__(f"Vaccine with ID {vaccine_id} not found", vaccine_id=vaccine_id)


class SchedulingNotFoundError(NotFoundError):
    def __init__(self, scheduling_id: str) -> None:
        super().__init__(
            f"Vaccine scheduling {scheduling_id} not found",
            scheduling_id=scheduling_id,
        )


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User with ID {user_id} not found", user_id=user_id)


class BatchNotFoundError(NotFoundError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Vaccine batch {batch_id} not found", batch_id=batch_id)


class NotificationNotFoundError(NotFoundError):
    def __init__(self, notification_id: str) -> None:
        super().__init__(
            f"Notification {notification_id} not found",
            notification_id=notification_id,
        )


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------


class InsufficientStockError(AppError):
    """No dose left to reserve (or consume) for a vaccine."""

    status_code = 409

    def __init__(self, vaccine_id: str, total_stock: int, reserved_count: int) -> None:
        super().__init__(
            f"No available doses for vaccine ID {vaccine_id}. "
            f"Total stock: {total_stock}, Reserved: {reserved_count}",
            vaccine_id=vaccine_id,
            total_stock=total_stock,
            reserved_count=reserved_count,
        )
        self.vaccine_id = vaccine_id
        self.total_stock = total_stock
        self.reserved_count = reserved_count


# ---------------------------------------------------------------------------
# State machine / validation
# ---------------------------------------------------------------------------


class ValidationError(AppError):
    status_code = 400


class InvalidSchedulingDateError(ValidationError):
    pass


class InvalidDoseNumberError(ValidationError):
    def __init__(self, vaccine_id: str, doses_required: int) -> None:
        super().__init__(
            f"Dose number exceeds vaccine requirements. "
            f"Vaccine {vaccine_id} requires only {doses_required} doses",
            vaccine_id=vaccine_id,
            doses_required=doses_required,
        )


class MissingPreviousDoseError(ValidationError):
    pass


class AlreadyCompletedError(ValidationError):
    def __init__(self, scheduling_id: str) -> None:
        super().__init__(
            "Cannot modify a completed scheduling", scheduling_id=scheduling_id
        )


class InvalidStatusTransitionError(ValidationError):
    pass


class BatchNotAvailableError(ValidationError):
    pass


class DuplicateSchedulingError(AppError):
    status_code = 409


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class ForbiddenError(AppError):
    status_code = 403


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class LockTimeoutError(AppError):
    """The vaccine lock could not be acquired before the deadline.

    Nothing was written, so the whole attempt can be retried.
    """

    status_code = 503
    retryable = True

    def __init__(self, resource_id: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:.2f}s waiting for lock on {resource_id}",
            resource_id=resource_id,
            timeout=timeout,
        )


class LedgerLockError(RuntimeError):
    """Stock was read without holding the vaccine lock."""
