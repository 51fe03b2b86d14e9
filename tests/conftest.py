"""Shared fixtures: a fresh clinic context per test with a frozen clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vaxclinic.config import Settings
from vaxclinic.context import AppContext, build_context
from vaxclinic.domain.models import (
    ReserveDoseRequest,
    User,
    UserRole,
    Vaccine,
    VaccineBatch,
)
from vaxclinic.repos.memory import InMemoryDatabase

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_users(db: InMemoryDatabase, patients: int = 3) -> None:
    db.users.add(User(id="manager-1", name="Marta", email="marta@clinic.test", role=UserRole.MANAGER))
    db.users.add(User(id="nurse-1", name="Nadia", email="nadia@clinic.test", role=UserRole.NURSE))
    db.users.add(User(id="nurse-2", name="Nico", email="nico@clinic.test", role=UserRole.NURSE))
    for i in range(patients):
        db.users.add(User(id=f"patient-{i}", name=f"Patient {i}", email=f"p{i}@clinic.test"))


def add_vaccine(ctx: AppContext, **overrides) -> Vaccine:
    defaults = dict(
        name="Hepatitis B",
        manufacturer="Butantan",
        total_stock=10,
        doses_required=3,
        interval_days=30,
        min_stock_level=0,
    )
    defaults.update(overrides)
    vaccine = Vaccine(**defaults)
    ctx.db.vaccines.add(vaccine)
    return vaccine


def add_batch(ctx: AppContext, vaccine: Vaccine, **overrides) -> VaccineBatch:
    defaults = dict(
        vaccine_id=vaccine.id,
        batch_number="HB-001",
        quantity=vaccine.total_stock,
        expiration_date=NOW + timedelta(days=90),
    )
    defaults.update(overrides)
    batch = VaccineBatch(**defaults)
    ctx.db.batches.add(batch)
    return batch


def reserve_request(
    vaccine: Vaccine, user_id: str = "patient-0", dose: int = 1, days: float = 1, **extra
) -> ReserveDoseRequest:
    return ReserveDoseRequest(
        vaccine_id=vaccine.id,
        user_id=user_id,
        dose_number=dose,
        scheduled_date=NOW + timedelta(days=days),
        **extra,
    )


@pytest.fixture()
def ctx() -> AppContext:
    """Fresh database + bus + services, no demo data, clock frozen at NOW."""
    settings = Settings(seed_demo_data=False, lock_timeout_seconds=1.0)
    db = InMemoryDatabase(lock_timeout=settings.lock_timeout_seconds)
    make_users(db)
    return build_context(settings, db=db, clock=lambda: NOW)


class EventRecorder:
    """Async handler that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list = []

    async def __call__(self, event) -> None:
        self.events.append(event)


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()
