"""Recording the administration of a scheduled dose."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from vaxclinic.domain.bus import EventPublisher
from vaxclinic.domain.errors import (
    BatchNotAvailableError,
    BatchNotFoundError,
    SchedulingNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from vaxclinic.domain.events import (
    EventMetadata,
    EventNames,
    VaccineApplied,
    VaccineAppliedData,
)
from vaxclinic.domain.models import (
    BatchStatus,
    SchedulingStatus,
    Vaccine,
    VaccineApplication,
    utcnow,
)
from vaxclinic.repos.memory import InMemoryDatabase
from vaxclinic.services.ledger import StockLedger
from vaxclinic.services.lifecycle import load_for_update
from vaxclinic.services.stock_alerts import low_stock_event

logger = logging.getLogger(__name__)


class ApplicationRecorder:
    """Turns an active scheduling into a COMPLETED one plus an application.

    The dose leaves both the batch and the vaccine's total stock in the same
    transaction that completes the scheduling, so available capacity is
    unchanged: one fewer dose in stock, one fewer reserved.
    """

    def __init__(
        self,
        db: InMemoryDatabase,
        ledger: StockLedger,
        bus: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.bus = bus
        self.clock = clock
        self.timeout = timeout

    async def record(
        self, scheduling_id: str, batch_id: str, applied_by_id: str
    ) -> VaccineApplication:
        if self.db.users.get(applied_by_id) is None:
            raise UserNotFoundError(applied_by_id)

        scheduling = self.db.schedulings.get(scheduling_id)
        if scheduling is None or scheduling.deleted_at is not None:
            raise SchedulingNotFoundError(scheduling_id)

        async with self.db.transaction(timeout=self.timeout) as tx:
            # Lock order: vaccine, then scheduling.
            vaccine = await self.ledger.lock_for_update(tx, scheduling.vaccine_id)
            scheduling = await load_for_update(tx, scheduling_id)

            if scheduling.status not in (
                SchedulingStatus.SCHEDULED,
                SchedulingStatus.CONFIRMED,
            ):
                raise ValidationError(
                    f"Scheduling {scheduling.id} is {scheduling.status.value} and cannot be applied",
                    scheduling_id=scheduling.id,
                )

            batch = await tx.get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            now = self.clock()
            if batch.vaccine_id != vaccine.id:
                raise ValidationError(
                    f"Batch {batch.batch_number} does not belong to vaccine {vaccine.id}",
                    batch_id=batch.id,
                    vaccine_id=vaccine.id,
                )
            if batch.status != BatchStatus.AVAILABLE:
                raise BatchNotAvailableError(
                    f"Batch {batch.batch_number} is not available (status: {batch.status.value})",
                    batch_id=batch.id,
                )
            if batch.expiration_date <= now:
                raise BatchNotAvailableError(
                    f"Batch {batch.batch_number} is expired", batch_id=batch.id
                )
            if batch.quantity <= 0:
                raise BatchNotAvailableError(
                    f"Batch {batch.batch_number} has no doses left", batch_id=batch.id
                )

            tx.update_batch(batch.model_copy(update={"quantity": batch.quantity - 1}))
            vaccine = await self.ledger.consume(tx, vaccine)
            tx.update_scheduling(
                scheduling.model_copy(update={"status": SchedulingStatus.COMPLETED})
            )
            application = VaccineApplication(
                scheduling_id=scheduling.id,
                user_id=scheduling.user_id,
                vaccine_id=vaccine.id,
                batch_id=batch.id,
                applied_by_id=applied_by_id,
                dose_number=scheduling.dose_number,
                applied_at=now,
            )
            tx.insert_application(application)

        logger.info(
            "Applied dose %d of vaccine %s to user %s (batch %s)",
            application.dose_number,
            vaccine.id,
            application.user_id,
            batch.batch_number,
        )
        await self._announce(application, vaccine)
        return application

    async def _announce(self, application: VaccineApplication, vaccine: Vaccine) -> None:
        event = VaccineApplied(
            type=EventNames.VACCINE_APPLIED,
            data=VaccineAppliedData(
                application_id=application.id,
                scheduling_id=application.scheduling_id,
                receiver_id=application.user_id,
                applied_by_id=application.applied_by_id,
                vaccine_id=vaccine.id,
                vaccine_name=vaccine.name,
                batch_id=application.batch_id,
                dose_number=application.dose_number,
            ),
            metadata=EventMetadata(
                source="applications", triggered_by=application.applied_by_id
            ),
        )
        await self.bus.publish(EventNames.VACCINE_APPLIED, event)

        if vaccine.total_stock < vaccine.min_stock_level:
            await self.bus.publish(EventNames.LOW_STOCK, low_stock_event(vaccine))
