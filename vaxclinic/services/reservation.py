"""Dose reservation: create a Scheduling without ever overbooking a vaccine.

``reserve_dose`` runs the whole check-and-insert inside one transaction that
holds the vaccine's exclusive lock, so concurrent attempts on the same vaccine
are serialized: the second one only counts reserved doses after the first
has committed or rolled back. Attempts on different vaccines never wait on
each other. A pessimistic lock is used instead of versioned rows, which
trades throughput under contention for a strong guarantee with no retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from vaxclinic.domain.bus import EventPublisher
from vaxclinic.domain.errors import (
    DuplicateSchedulingError,
    InsufficientStockError,
    InvalidDoseNumberError,
    InvalidSchedulingDateError,
    MissingPreviousDoseError,
    UserNotFoundError,
    ValidationError,
)
from vaxclinic.domain.events import (
    EventMetadata,
    EventNames,
    VaccineScheduled,
    VaccineScheduledData,
)
from vaxclinic.domain.models import (
    ReserveDoseRequest,
    Scheduling,
    SchedulingStatus,
    User,
    UserRole,
    Vaccine,
    utcnow,
)
from vaxclinic.repos.memory import InMemoryDatabase, Transaction
from vaxclinic.services.ledger import StockLedger

logger = logging.getLogger(__name__)


class ReservationService:
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

    async def reserve_dose(self, request: ReserveDoseRequest) -> Scheduling:
        """Reserve one dose for a patient and return the new Scheduling.

        Raises ``VaccineNotFoundError``, ``InsufficientStockError``,
        ``InvalidSchedulingDateError``, ``InvalidDoseNumberError``,
        ``DuplicateSchedulingError``, ``MissingPreviousDoseError`` or, when
        the lock cannot be taken before the deadline, the retryable
        ``LockTimeoutError``. Nothing is written on failure.
        """
        # Lookups that need no lock happen before the transaction starts.
        patient = self._get_user(request.user_id)
        nurse = self._get_nurse(request.nurse_id) if request.nurse_id else None

        async with self.db.transaction(timeout=self.timeout) as tx:
            vaccine = await self.ledger.lock_for_update(tx, request.vaccine_id)

            stock = await self.ledger.get_available(tx, vaccine.id)
            if stock.available <= 0:
                logger.warning(
                    "Reservation rejected for vaccine %s: total=%d reserved=%d",
                    vaccine.id,
                    stock.total_stock,
                    stock.reserved_count,
                )
                raise InsufficientStockError(
                    vaccine.id, stock.total_stock, stock.reserved_count
                )

            await self._validate(tx, request, vaccine, now=self.clock())

            scheduling = Scheduling(
                user_id=patient.id,
                vaccine_id=vaccine.id,
                dose_number=request.dose_number,
                scheduled_date=request.scheduled_date,
                assigned_nurse_id=nurse.id if nurse else None,
                status=SchedulingStatus.SCHEDULED,
                notes=request.notes,
            )
            tx.insert_scheduling(scheduling)

        logger.info(
            "Reserved dose %d of vaccine %s for user %s (scheduling %s, %d left)",
            scheduling.dose_number,
            vaccine.id,
            patient.id,
            scheduling.id,
            stock.available - 1,
        )
        await self._announce(scheduling, vaccine, patient, nurse)
        return scheduling

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _validate(
        self,
        tx: Transaction,
        request: ReserveDoseRequest,
        vaccine: Vaccine,
        now: datetime,
    ) -> None:
        if request.scheduled_date <= now:
            raise InvalidSchedulingDateError(
                "Scheduled date must be in the future",
                scheduled_date=request.scheduled_date.isoformat(),
            )

        if request.dose_number > vaccine.doses_required:
            raise InvalidDoseNumberError(vaccine.id, vaccine.doses_required)

        duplicate = await tx.find_active_scheduling(
            request.user_id, vaccine.id, request.dose_number
        )
        if duplicate is not None:
            raise DuplicateSchedulingError(
                f"An active scheduling for dose {request.dose_number} "
                "of this vaccine already exists",
                scheduling_id=duplicate.id,
            )

        if request.dose_number == 1:
            return

        previous_dose = request.dose_number - 1
        previous = await tx.find_active_scheduling(
            request.user_id, vaccine.id, previous_dose
        )
        if previous is None:
            raise MissingPreviousDoseError(
                f"Previous dose {previous_dose} must be scheduled before "
                f"scheduling dose {request.dose_number}",
                dose_number=request.dose_number,
            )

        if not vaccine.interval_days:
            raise ValidationError(
                f"Vaccine with ID {vaccine.id} does not have a valid intervalDays configured",
                vaccine_id=vaccine.id,
            )

        gap = request.scheduled_date - previous.scheduled_date
        if gap < timedelta(days=vaccine.interval_days):
            raise InvalidSchedulingDateError(
                f"Dose {request.dose_number} must be scheduled at least "
                f"{vaccine.interval_days} days after dose {previous_dose}",
                interval_days=vaccine.interval_days,
                previous_scheduled_date=previous.scheduled_date.isoformat(),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_user(self, user_id: str) -> User:
        user = self.db.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _get_nurse(self, nurse_id: str) -> User:
        nurse = self._get_user(nurse_id)
        if nurse.role != UserRole.NURSE:
            raise ValidationError(
                "The assigned nurseId does not belong to a user with NURSE role",
                nurse_id=nurse_id,
            )
        return nurse

    async def _announce(
        self,
        scheduling: Scheduling,
        vaccine: Vaccine,
        patient: User,
        nurse: User | None,
    ) -> None:
        recipients = [(patient, "patient")]
        if nurse is not None:
            recipients.append((nurse, "nurse"))

        for recipient, role in recipients:
            event = VaccineScheduled(
                type=EventNames.VACCINE_SCHEDULED,
                data=VaccineScheduledData(
                    scheduling_id=scheduling.id,
                    recipient_id=recipient.id,
                    recipient_role=role,
                    patient_id=patient.id,
                    patient_name=patient.name,
                    nurse_id=nurse.id if nurse else None,
                    nurse_name=nurse.name if nurse else None,
                    vaccine_id=vaccine.id,
                    vaccine_name=vaccine.name,
                    scheduled_date=scheduling.scheduled_date,
                    dose_number=scheduling.dose_number,
                ),
                metadata=EventMetadata(source="reservation", triggered_by=patient.id),
            )
            await self.bus.publish(EventNames.VACCINE_SCHEDULED, event)
