"""Domain events published after state changes.

An event is a ``NotificationEvent`` envelope around a typed payload. Events are
never persisted: they live for one dispatch and are then dropped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from vaxclinic.domain.models import StrEnum, utcnow


class EventNames:
    VACCINE_SCHEDULED = "vaccine.scheduled"
    NURSE_CHANGED = "nurse.changed"
    VACCINE_APPLIED = "vaccine.applied"
    BATCH_EXPIRING = "batch.expiring"
    LOW_STOCK = "stock.low"


class Channel(StrEnum):
    IN_APP = "in-app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class EventMetadata(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    source: str | None = None
    triggered_by: str | None = None


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class VaccineScheduledData(BaseModel):
    """Sent once per person involved in a new scheduling."""

    scheduling_id: str
    recipient_id: str
    recipient_role: Literal["patient", "nurse"]
    patient_id: str
    patient_name: str
    nurse_id: str | None = None
    nurse_name: str | None = None
    vaccine_id: str
    vaccine_name: str
    scheduled_date: datetime
    dose_number: int


class NurseChangedData(BaseModel):
    scheduling_id: str
    old_nurse_id: str | None = None
    new_nurse_id: str


class VaccineAppliedData(BaseModel):
    application_id: str
    scheduling_id: str
    receiver_id: str
    applied_by_id: str
    vaccine_id: str
    vaccine_name: str
    batch_id: str
    dose_number: int


class LowStockData(BaseModel):
    vaccine_id: str
    vaccine_name: str
    manufacturer: str
    current_stock: int
    min_stock_level: int
    stock_percentage: int


class BatchExpiringData(BaseModel):
    batch_id: str
    batch_number: str
    vaccine_id: str
    vaccine_name: str
    manufacturer: str
    expiration_date: datetime
    days_until_expiration: int
    current_quantity: int


PayloadT = TypeVar("PayloadT", bound=BaseModel)


class NotificationEvent(BaseModel, Generic[PayloadT]):
    """Envelope shared by every event on the bus."""

    type: str
    channels: list[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
    data: PayloadT
    priority: Priority = Priority.NORMAL
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    def targets(self, channel: Channel) -> bool:
        return channel in self.channels


VaccineScheduled = NotificationEvent[VaccineScheduledData]
NurseChanged = NotificationEvent[NurseChangedData]
VaccineApplied = NotificationEvent[VaccineAppliedData]
LowStock = NotificationEvent[LowStockData]
BatchExpiring = NotificationEvent[BatchExpiringData]
