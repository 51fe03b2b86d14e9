"""Application context: every service, built once and passed around explicitly."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from vaxclinic.config import Settings
from vaxclinic.domain.bus import EventBus
from vaxclinic.domain.handlers import HandlerRegistry
from vaxclinic.domain.models import utcnow
from vaxclinic.repos.memory import InMemoryDatabase, create_database
from vaxclinic.services.applications import ApplicationRecorder
from vaxclinic.services.ledger import StockLedger
from vaxclinic.services.lifecycle import SchedulingLifecycle
from vaxclinic.services.notifications import NotificationService
from vaxclinic.services.reservation import ReservationService


@dataclass
class AppContext:
    settings: Settings
    db: InMemoryDatabase
    bus: EventBus
    ledger: StockLedger
    reservations: ReservationService
    lifecycle: SchedulingLifecycle
    applications: ApplicationRecorder
    notifications: NotificationService
    handlers: HandlerRegistry
    clock: Callable[[], datetime] = utcnow


def build_context(
    settings: Settings,
    db: InMemoryDatabase | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AppContext:
    if db is None:
        db = create_database(
            lock_timeout=settings.lock_timeout_seconds, seed=settings.seed_demo_data
        )
    bus = EventBus()
    ledger = StockLedger()
    timeout = settings.lock_timeout_seconds

    handlers = HandlerRegistry(
        bus=bus,
        users=db.users,
        schedulings=db.schedulings,
        notifications=db.notifications,
    )

    return AppContext(
        settings=settings,
        db=db,
        bus=bus,
        ledger=ledger,
        reservations=ReservationService(db, ledger, bus, clock=clock, timeout=timeout),
        lifecycle=SchedulingLifecycle(db, bus, clock=clock, timeout=timeout),
        applications=ApplicationRecorder(db, ledger, bus, clock=clock, timeout=timeout),
        notifications=NotificationService(db.notifications),
        handlers=handlers,
        clock=clock,
    )
