"""Scheduling lifecycle: status transitions, updates and soft deletion.

A scheduling starts SCHEDULED, may be CONFIRMED, and ends COMPLETED or
CANCELLED. Both end states are terminal. Authorization is the caller's job;
this module only enforces which changes are legal.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from vaxclinic.domain.bus import EventPublisher
from vaxclinic.domain.errors import (
    AlreadyCompletedError,
    InvalidSchedulingDateError,
    InvalidStatusTransitionError,
    SchedulingNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from vaxclinic.domain.events import (
    EventMetadata,
    EventNames,
    NurseChanged,
    NurseChangedData,
)
from vaxclinic.domain.models import (
    Scheduling,
    SchedulingStatus,
    UpdateSchedulingRequest,
    User,
    UserRole,
    utcnow,
)
from vaxclinic.repos.memory import InMemoryDatabase, Transaction

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SchedulingStatus, frozenset[SchedulingStatus]] = {
    SchedulingStatus.SCHEDULED: frozenset(
        {
            SchedulingStatus.CONFIRMED,
            SchedulingStatus.CANCELLED,
            SchedulingStatus.COMPLETED,
        }
    ),
    SchedulingStatus.CONFIRMED: frozenset(
        {SchedulingStatus.COMPLETED, SchedulingStatus.CANCELLED}
    ),
    SchedulingStatus.CANCELLED: frozenset(),
    SchedulingStatus.COMPLETED: frozenset(),
}


def scheduling_lock_key(scheduling_id: str) -> str:
    return f"scheduling:{scheduling_id}"


def ensure_mutable(scheduling: Scheduling) -> None:
    if scheduling.status == SchedulingStatus.COMPLETED:
        raise AlreadyCompletedError(scheduling.id)
    if scheduling.status == SchedulingStatus.CANCELLED:
        raise InvalidStatusTransitionError(
            "Cannot modify a cancelled scheduling", scheduling_id=scheduling.id
        )


def check_transition(current: SchedulingStatus, target: SchedulingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(
            f"Cannot move a scheduling from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


async def load_for_update(tx: Transaction, scheduling_id: str) -> Scheduling:
    """Lock a live scheduling for the rest of *tx* and return it."""
    await tx.lock(scheduling_lock_key(scheduling_id))
    scheduling = await tx.get_scheduling(scheduling_id)
    if scheduling is None or scheduling.deleted_at is not None:
        raise SchedulingNotFoundError(scheduling_id)
    return scheduling


class SchedulingLifecycle:
    def __init__(
        self,
        db: InMemoryDatabase,
        bus: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.bus = bus
        self.clock = clock
        self.timeout = timeout

    def get(self, scheduling_id: str) -> Scheduling:
        scheduling = self.db.schedulings.get(scheduling_id)
        if scheduling is None or scheduling.deleted_at is not None:
            raise SchedulingNotFoundError(scheduling_id)
        return scheduling

    async def update(
        self,
        scheduling_id: str,
        changes: UpdateSchedulingRequest,
        triggered_by: str | None = None,
    ) -> Scheduling:
        """Apply a partial update.

        A new ``scheduled_date`` only has to be in the future; dose order and
        interval rules are not re-checked against sibling schedulings.
        Reassigning the nurse publishes ``nurse.changed`` once committed.
        """
        async with self.db.transaction(timeout=self.timeout) as tx:
            current = await load_for_update(tx, scheduling_id)
            ensure_mutable(current)

            fields: dict[str, object] = {}
            if changes.scheduled_date is not None:
                if changes.scheduled_date <= self.clock():
                    raise InvalidSchedulingDateError(
                        "New scheduled date must be in the future",
                        scheduled_date=changes.scheduled_date.isoformat(),
                    )
                fields["scheduled_date"] = changes.scheduled_date

            if changes.notes is not None:
                fields["notes"] = changes.notes

            if changes.status is not None and changes.status != current.status:
                check_transition(current.status, changes.status)
                fields["status"] = changes.status

            old_nurse_id = current.assigned_nurse_id
            nurse_changed = (
                changes.nurse_id is not None and changes.nurse_id != old_nurse_id
            )
            if nurse_changed:
                fields["assigned_nurse_id"] = self._get_nurse(changes.nurse_id).id

            updated = current.model_copy(update=fields)
            tx.update_scheduling(updated)

        if nurse_changed:
            logger.info(
                "Scheduling %s reassigned from nurse %s to %s",
                updated.id,
                old_nurse_id,
                updated.assigned_nurse_id,
            )
            event = NurseChanged(
                type=EventNames.NURSE_CHANGED,
                data=NurseChangedData(
                    scheduling_id=updated.id,
                    old_nurse_id=old_nurse_id,
                    new_nurse_id=updated.assigned_nurse_id,
                ),
                metadata=EventMetadata(source="lifecycle", triggered_by=triggered_by),
            )
            await self.bus.publish(EventNames.NURSE_CHANGED, event)
        return updated

    async def cancel(self, scheduling_id: str) -> Scheduling:
        """Soft-delete: stamp ``deleted_at`` and force CANCELLED.

        The dose it held goes back to the vaccine's available capacity and
        the scheduling no longer counts for duplicate or dose-order checks.
        """
        async with self.db.transaction(timeout=self.timeout) as tx:
            current = await load_for_update(tx, scheduling_id)
            if current.status == SchedulingStatus.COMPLETED:
                raise AlreadyCompletedError(current.id)
            cancelled = current.model_copy(
                update={"deleted_at": self.clock(), "status": SchedulingStatus.CANCELLED}
            )
            tx.update_scheduling(cancelled)

        logger.info("Scheduling %s cancelled", scheduling_id)
        return cancelled

    def _get_nurse(self, nurse_id: str) -> User:
        nurse = self.db.users.get(nurse_id)
        if nurse is None:
            raise UserNotFoundError(nurse_id)
        if nurse.role != UserRole.NURSE:
            raise ValidationError(
                "The assigned nurseId does not belong to a user with NURSE role",
                nurse_id=nurse_id,
            )
        return nurse
