"""Domain models for the vaccination clinic."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

try:
    from enum import StrEnum
except ImportError:  # pragma: no cover - fallback for older Python runtimes

    class StrEnum(str, Enum):
        pass


class UserRole(StrEnum):
    EMPLOYEE = "EMPLOYEE"
    NURSE = "NURSE"
    MANAGER = "MANAGER"


class SchedulingStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


# Statuses that hold a dose of stock.
RESERVING_STATUSES = frozenset({SchedulingStatus.SCHEDULED, SchedulingStatus.CONFIRMED})


class BatchStatus(StrEnum):
    AVAILABLE = "AVAILABLE"
    EXPIRED = "EXPIRED"
    DISCARDED = "DISCARDED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _assume_utc(value: datetime) -> datetime:
    # Naive datetimes from clients are taken as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class User(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: str
    role: UserRole = UserRole.EMPLOYEE


class Vaccine(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    manufacturer: str = ""
    total_stock: int = Field(default=0, ge=0)
    doses_required: int = Field(default=1, ge=1)
    interval_days: int | None = Field(default=None, ge=0)
    min_stock_level: int = Field(default=0, ge=0)
    deleted_at: datetime | None = None


class VaccineBatch(BaseModel):
    id: str = Field(default_factory=_new_id)
    vaccine_id: str
    batch_number: str
    quantity: int = Field(ge=0)
    expiration_date: datetime
    status: BatchStatus = BatchStatus.AVAILABLE


class Scheduling(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    vaccine_id: str
    dose_number: int = Field(ge=1)
    scheduled_date: datetime
    assigned_nurse_id: str | None = None
    status: SchedulingStatus = SchedulingStatus.SCHEDULED
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @property
    def is_reserving(self) -> bool:
        """True while this scheduling holds a dose of the vaccine's stock."""
        return self.deleted_at is None and self.status in RESERVING_STATUSES

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status != SchedulingStatus.CANCELLED


class VaccineApplication(BaseModel):
    id: str = Field(default_factory=_new_id)
    scheduling_id: str
    user_id: str
    vaccine_id: str
    batch_id: str
    applied_by_id: str
    dose_number: int
    applied_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    type: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class StockLevel(BaseModel):
    """Snapshot of a vaccine's ledger, valid only under the vaccine lock."""

    vaccine_id: str
    total_stock: int
    reserved_count: int

    @property
    def available(self) -> int:
        return self.total_stock - self.reserved_count


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class ReserveDoseRequest(BaseModel):
    vaccine_id: str
    user_id: str
    dose_number: int = Field(ge=1)
    scheduled_date: datetime
    nurse_id: str | None = None
    notes: str | None = None

    @field_validator("scheduled_date")
    @classmethod
    def _utc_scheduled_date(cls, value: datetime) -> datetime:
        return _assume_utc(value)


class UpdateSchedulingRequest(BaseModel):
    scheduled_date: datetime | None = None
    notes: str | None = None
    status: SchedulingStatus | None = None
    nurse_id: str | None = None

    @field_validator("scheduled_date")
    @classmethod
    def _utc_scheduled_date(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value) if value is not None else None


class RecordApplicationRequest(BaseModel):
    batch_id: str


class StockResponse(BaseModel):
    vaccine_id: str
    total_stock: int
    reserved_count: int
    available: int
