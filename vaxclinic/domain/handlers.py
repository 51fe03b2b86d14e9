"""In-app notification handlers, subscribed when the application starts."""

from __future__ import annotations

import logging

from vaxclinic.domain.bus import EventBus
from vaxclinic.domain.events import (
    BatchExpiring,
    Channel,
    EventNames,
    LowStock,
    NotificationEvent,
    NurseChanged,
    VaccineApplied,
    VaccineScheduled,
)
from vaxclinic.domain.models import Notification, UserRole
from vaxclinic.repos.memory import (
    NotificationRepository,
    SchedulingRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Subscribes every in-app notification handler to the bus.

    Handlers raise on bad input; the bus isolates and logs the failure.
    """

    def __init__(
        self,
        bus: EventBus,
        users: UserRepository,
        schedulings: SchedulingRepository,
        notifications: NotificationRepository,
    ) -> None:
        self.bus = bus
        self.users = users
        self.schedulings = schedulings
        self.notifications = notifications
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(EventNames.VACCINE_SCHEDULED, self.on_vaccine_scheduled)
        self.bus.subscribe(EventNames.NURSE_CHANGED, self.on_nurse_changed)
        self.bus.subscribe(EventNames.VACCINE_APPLIED, self.on_vaccine_applied)
        self.bus.subscribe(EventNames.LOW_STOCK, self.on_low_stock)
        self.bus.subscribe(EventNames.BATCH_EXPIRING, self.on_batch_expiring)
        logger.info("Notification handlers registered for 5 event types")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def on_vaccine_scheduled(self, event: VaccineScheduled) -> None:
        if not event.targets(Channel.IN_APP):
            return
        data = event.data
        when = data.scheduled_date.strftime("%Y-%m-%d %H:%M")

        if data.recipient_role == "patient":
            message = f"Dose {data.dose_number} of {data.vaccine_name} scheduled for {when}."
        else:
            message = (
                f"You were assigned to give {data.patient_name} dose "
                f"{data.dose_number} of {data.vaccine_name} on {when}."
            )

        self.notifications.add(
            Notification(
                user_id=data.recipient_id,
                type="VACCINE_SCHEDULED",
                title="Vaccine scheduled",
                message=message,
                metadata={"scheduling_id": data.scheduling_id, "vaccine_id": data.vaccine_id},
            )
        )

    async def on_nurse_changed(self, event: NurseChanged) -> None:
        if not event.targets(Channel.IN_APP):
            return
        data = event.data

        scheduling = self.schedulings.get(data.scheduling_id)
        new_nurse = self.users.get(data.new_nurse_id)
        if scheduling is None or new_nurse is None:
            raise LookupError(
                f"Scheduling or nurse not found for nurse change: {data.model_dump()}"
            )

        metadata = {
            "scheduling_id": scheduling.id,
            "old_nurse_id": data.old_nurse_id,
            "new_nurse_id": new_nurse.id,
        }
        self.notifications.add(
            Notification(
                user_id=scheduling.user_id,
                type="NURSE_CHANGED",
                title="Nurse changed",
                message=f"{new_nurse.name} will now give your vaccine.",
                metadata=metadata,
            )
        )
        if data.old_nurse_id is not None:
            self.notifications.add(
                Notification(
                    user_id=data.old_nurse_id,
                    type="NURSE_CHANGED",
                    title="Scheduling reassigned",
                    message="You were removed from a vaccine scheduling.",
                    metadata=metadata,
                )
            )
        self.notifications.add(
            Notification(
                user_id=new_nurse.id,
                type="NURSE_CHANGED",
                title="New scheduling assigned",
                message="You were assigned to a vaccine scheduling.",
                metadata=metadata,
            )
        )

    async def on_vaccine_applied(self, event: VaccineApplied) -> None:
        if not event.targets(Channel.IN_APP):
            return
        data = event.data
        self.notifications.add(
            Notification(
                user_id=data.receiver_id,
                type="VACCINE_APPLIED",
                title="Vaccine applied",
                message=f"Dose {data.dose_number} of {data.vaccine_name} was applied.",
                metadata={"application_id": data.application_id, "batch_id": data.batch_id},
            )
        )

    async def on_low_stock(self, event: LowStock) -> None:
        if not event.targets(Channel.IN_APP):
            return
        data = event.data
        self._notify_managers(
            event,
            type="LOW_STOCK",
            title="Low stock",
            message=(
                f"{data.vaccine_name} stock is below the minimum: "
                f"{data.current_stock} of {data.min_stock_level} dose(s)."
            ),
            metadata={"vaccine_id": data.vaccine_id, "stock_percentage": data.stock_percentage},
        )

    async def on_batch_expiring(self, event: BatchExpiring) -> None:
        if not event.targets(Channel.IN_APP):
            return
        data = event.data
        self._notify_managers(
            event,
            type="BATCH_EXPIRING",
            title="Batch expiring",
            message=(
                f"Batch {data.batch_number} of {data.vaccine_name} expires in "
                f"{data.days_until_expiration} day(s)."
            ),
            metadata={"batch_id": data.batch_id, "vaccine_id": data.vaccine_id},
        )

    def _notify_managers(
        self,
        event: NotificationEvent,
        type: str,
        title: str,
        message: str,
        metadata: dict,
    ) -> None:
        managers = self.users.list_by_role(UserRole.MANAGER)
        if not managers:
            logger.warning("No managers found to notify about '%s'", event.type)
            return
        for manager in managers:
            self.notifications.add(
                Notification(
                    user_id=manager.id,
                    type=type,
                    title=title,
                    message=message,
                    metadata={**metadata, "priority": event.priority.value},
                )
            )
