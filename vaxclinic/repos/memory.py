"""In-memory stores and the transaction that guards them.

``InMemoryDatabase`` groups one repository per table and hands out
``Transaction`` units of work. A transaction can take exclusive row locks
(held until it ends), reads through the repositories, and stages writes
that only land on commit. Leaving the ``transaction()`` block with an
exception discards the staged writes; the locks are released either way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from vaxclinic.domain.errors import LockTimeoutError
from vaxclinic.domain.models import (
    BatchStatus,
    Notification,
    Scheduling,
    User,
    UserRole,
    Vaccine,
    VaccineApplication,
    VaccineBatch,
)

logger = logging.getLogger(__name__)


class UserRepository:
    """Dict-backed store for User instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, User] = {}

    def add(self, user: User) -> None:
        self._store[user.id] = user

    def get(self, user_id: str) -> User | None:
        return self._store.get(user_id)

    def list_by_role(self, role: UserRole) -> list[User]:
        return [u for u in self._store.values() if u.role == role]


class VaccineRepository:
    """Dict-backed store for Vaccine rows, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Vaccine] = {}

    def add(self, vaccine: Vaccine) -> None:
        self._store[vaccine.id] = vaccine

    def get(self, vaccine_id: str) -> Vaccine | None:
        return self._store.get(vaccine_id)

    def get_active(self, vaccine_id: str) -> Vaccine | None:
        """Return the vaccine unless it is missing or soft-deleted."""
        vaccine = self._store.get(vaccine_id)
        if vaccine is None or vaccine.deleted_at is not None:
            return None
        return vaccine

    def list_all(self) -> list[Vaccine]:
        return list(self._store.values())

    def replace(self, vaccine: Vaccine) -> None:
        self._store[vaccine.id] = vaccine


class BatchRepository:
    """Dict-backed store for VaccineBatch rows, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, VaccineBatch] = {}

    def add(self, batch: VaccineBatch) -> None:
        self._store[batch.id] = batch

    def get(self, batch_id: str) -> VaccineBatch | None:
        return self._store.get(batch_id)

    def list_all(self) -> list[VaccineBatch]:
        return list(self._store.values())

    def replace(self, batch: VaccineBatch) -> None:
        self._store[batch.id] = batch


class SchedulingRepository:
    """Dict-backed store for Scheduling rows, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Scheduling] = {}

    def add(self, scheduling: Scheduling) -> None:
        self._store[scheduling.id] = scheduling

    def get(self, scheduling_id: str) -> Scheduling | None:
        return self._store.get(scheduling_id)

    def replace(self, scheduling: Scheduling) -> None:
        self._store[scheduling.id] = scheduling

    def list_all(self) -> list[Scheduling]:
        return list(self._store.values())

    def count_reserving(self, vaccine_id: str) -> int:
        """Number of schedulings currently holding a dose of this vaccine."""
        return sum(
            1 for s in self._store.values() if s.vaccine_id == vaccine_id and s.is_reserving
        )

    def find_active(
        self, user_id: str, vaccine_id: str, dose_number: int
    ) -> Scheduling | None:
        for s in self._store.values():
            if (
                s.user_id == user_id
                and s.vaccine_id == vaccine_id
                and s.dose_number == dose_number
                and s.is_active
            ):
                return s
        return None


class ApplicationRepository:
    """Dict-backed store for VaccineApplication rows, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, VaccineApplication] = {}

    def add(self, application: VaccineApplication) -> None:
        self._store[application.id] = application

    def get(self, application_id: str) -> VaccineApplication | None:
        return self._store.get(application_id)

    def get_by_scheduling(self, scheduling_id: str) -> VaccineApplication | None:
        for application in self._store.values():
            if application.scheduling_id == scheduling_id:
                return application
        return None


class NotificationRepository:
    """List-backed store for Notification instances."""

    def __init__(self) -> None:
        self._items: list[Notification] = []

    def add(self, notification: Notification) -> None:
        self._items.append(notification)

    def get(self, notification_id: str) -> Notification | None:
        for n in self._items:
            if n.id == notification_id:
                return n
        return None

    def list_for_user(self, user_id: str) -> list[Notification]:
        return sorted(
            (n for n in self._items if n.user_id == user_id),
            key=lambda n: n.created_at,
            reverse=True,
        )

    def mark_read(self, notification_id: str) -> Notification | None:
        n = self.get(notification_id)
        if n is not None:
            n.is_read = True
        return n


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class Transaction:
    """One unit of work against an ``InMemoryDatabase``.

    Reads yield to the event loop once, the way a database round-trip would,
    so concurrent transactions really interleave between statements.
    """

    def __init__(self, db: InMemoryDatabase, timeout: float) -> None:
        self._db = db
        self.timeout = timeout
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + timeout
        self._held: dict[str, asyncio.Lock] = {}
        self._writes: list[Callable[[], None]] = []
        self._closed = False

    # -- locking -------------------------------------------------------

    async def lock(self, key: str) -> None:
        """Take the exclusive lock on *key* until this transaction ends."""
        if key in self._held:
            return
        lock = self._db.checkout_lock(key)
        try:
            remaining = self._deadline - self._loop.time()
            if remaining <= 0:
                raise LockTimeoutError(key, self.timeout)
            try:
                await asyncio.wait_for(lock.acquire(), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("Lock wait on %s exceeded %.2fs", key, self.timeout)
                raise LockTimeoutError(key, self.timeout) from None
        except BaseException:
            self._db.checkin_lock(key)
            raise
        self._held[key] = lock

    def holds(self, key: str) -> bool:
        return key in self._held

    # -- reads ---------------------------------------------------------

    async def _round_trip(self) -> None:
        await asyncio.sleep(0)

    async def get_vaccine(self, vaccine_id: str) -> Vaccine | None:
        await self._round_trip()
        return self._db.vaccines.get_active(vaccine_id)

    async def get_batch(self, batch_id: str) -> VaccineBatch | None:
        await self._round_trip()
        return self._db.batches.get(batch_id)

    async def get_scheduling(self, scheduling_id: str) -> Scheduling | None:
        await self._round_trip()
        return self._db.schedulings.get(scheduling_id)

    async def count_reserved(self, vaccine_id: str) -> int:
        await self._round_trip()
        return self._db.schedulings.count_reserving(vaccine_id)

    async def find_active_scheduling(
        self, user_id: str, vaccine_id: str, dose_number: int
    ) -> Scheduling | None:
        await self._round_trip()
        return self._db.schedulings.find_active(user_id, vaccine_id, dose_number)

    # -- staged writes -------------------------------------------------

    def insert_scheduling(self, scheduling: Scheduling) -> None:
        self._writes.append(lambda: self._db.schedulings.add(scheduling))

    def update_scheduling(self, scheduling: Scheduling) -> None:
        self._writes.append(lambda: self._db.schedulings.replace(scheduling))

    def update_vaccine(self, vaccine: Vaccine) -> None:
        self._writes.append(lambda: self._db.vaccines.replace(vaccine))

    def update_batch(self, batch: VaccineBatch) -> None:
        self._writes.append(lambda: self._db.batches.replace(batch))

    def insert_application(self, application: VaccineApplication) -> None:
        self._writes.append(lambda: self._db.applications.add(application))

    # -- completion ----------------------------------------------------

    def commit(self) -> None:
        for write in self._writes:
            write()
        self._writes.clear()

    def rollback(self) -> None:
        self._writes.clear()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for key, lock in self._held.items():
            lock.release()
            self._db.checkin_lock(key)
        self._held.clear()


class InMemoryDatabase:
    """All clinic tables plus the row locks transactions take on them."""

    def __init__(self, lock_timeout: float = 5.0) -> None:
        self.lock_timeout = lock_timeout
        self.users = UserRepository()
        self.vaccines = VaccineRepository()
        self.batches = BatchRepository()
        self.schedulings = SchedulingRepository()
        self.applications = ApplicationRepository()
        self.notifications = NotificationRepository()
        # key -> (lock, number of transactions holding or waiting on it)
        self._row_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def checkout_lock(self, key: str) -> asyncio.Lock:
        """Return the lock for *key*, counting the caller as a user of it.

        Every checkout must be paired with one ``checkin_lock``. The entry is
        dropped when its last user checks in.
        """
        lock, users = self._row_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._row_locks[key] = (lock, users + 1)
        return lock

    def checkin_lock(self, key: str) -> None:
        lock, users = self._row_locks[key]
        if users <= 1:
            del self._row_locks[key]
        else:
            self._row_locks[key] = (lock, users - 1)

    def is_locked(self, key: str) -> bool:
        entry = self._row_locks.get(key)
        return entry is not None and entry[0].locked()

    @property
    def lock_count(self) -> int:
        return len(self._row_locks)

    @asynccontextmanager
    async def transaction(self, timeout: float | None = None) -> AsyncIterator[Transaction]:
        tx = Transaction(self, self.lock_timeout if timeout is None else timeout)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        else:
            tx.commit()
        finally:
            tx.close()


# ---------------------------------------------------------------------------
# Seed data – a small clinic useful for trying the API by hand
# ---------------------------------------------------------------------------


def seed_demo_data(db: InMemoryDatabase) -> None:
    now = datetime.now(timezone.utc)

    db.users.add(User(id="manager-1", name="Marta Manager", email="marta@clinic.test", role=UserRole.MANAGER))
    db.users.add(User(id="nurse-1", name="Nadia Nurse", email="nadia@clinic.test", role=UserRole.NURSE))
    db.users.add(User(id="nurse-2", name="Nico Nurse", email="nico@clinic.test", role=UserRole.NURSE))
    db.users.add(User(id="patient-1", name="Paulo Patient", email="paulo@clinic.test"))

    hep_b = Vaccine(
        id="hepatitis-b",
        name="Hepatitis B",
        manufacturer="Butantan",
        total_stock=20,
        doses_required=3,
        interval_days=30,
        min_stock_level=10,
    )
    flu = Vaccine(
        id="influenza",
        name="Influenza",
        manufacturer="Sanofi",
        total_stock=2,
        doses_required=1,
        min_stock_level=5,
    )
    db.vaccines.add(hep_b)
    db.vaccines.add(flu)

    db.batches.add(
        VaccineBatch(
            vaccine_id=hep_b.id,
            batch_number="HB-2024-001",
            quantity=20,
            expiration_date=now + timedelta(days=180),
        )
    )
    db.batches.add(
        VaccineBatch(
            vaccine_id=flu.id,
            batch_number="FLU-2024-007",
            quantity=2,
            expiration_date=now + timedelta(days=10),
            status=BatchStatus.AVAILABLE,
        )
    )


def create_database(lock_timeout: float = 5.0, seed: bool = True) -> InMemoryDatabase:
    """Return an InMemoryDatabase, optionally pre-loaded with sample data."""
    db = InMemoryDatabase(lock_timeout=lock_timeout)
    if seed:
        seed_demo_data(db)
    return db
