"""Stock ledger: total and reserved doses per vaccine, read under lock.

Available capacity is ``total_stock - reserved`` where *reserved* is the
number of SCHEDULED/CONFIRMED, non-deleted schedulings for the vaccine. It is
recounted on every call and is only meaningful while the caller's
transaction holds the vaccine lock.
"""

from __future__ import annotations

from vaxclinic.domain.errors import (
    InsufficientStockError,
    LedgerLockError,
    VaccineNotFoundError,
)
from vaxclinic.domain.models import StockLevel, Vaccine
from vaxclinic.repos.memory import Transaction


def vaccine_lock_key(vaccine_id: str) -> str:
    return f"vaccine:{vaccine_id}"


class StockLedger:
    async def lock_for_update(self, tx: Transaction, vaccine_id: str) -> Vaccine:
        """Lock the vaccine row for the rest of *tx* and return it.

        Blocks while another transaction holds the same vaccine. Raises
        ``VaccineNotFoundError`` if the vaccine is missing or soft-deleted;
        the caller's transaction then aborts and releases the lock.
        """
        await tx.lock(vaccine_lock_key(vaccine_id))
        vaccine = await tx.get_vaccine(vaccine_id)
        if vaccine is None:
            raise VaccineNotFoundError(vaccine_id)
        return vaccine

    async def get_available(self, tx: Transaction, vaccine_id: str) -> StockLevel:
        if not tx.holds(vaccine_lock_key(vaccine_id)):
            raise LedgerLockError(
                f"get_available({vaccine_id!r}) called without holding the vaccine lock"
            )
        vaccine = await tx.get_vaccine(vaccine_id)
        if vaccine is None:
            raise VaccineNotFoundError(vaccine_id)
        reserved = await tx.count_reserved(vaccine_id)
        return StockLevel(
            vaccine_id=vaccine_id,
            total_stock=vaccine.total_stock,
            reserved_count=reserved,
        )

    async def consume(self, tx: Transaction, vaccine: Vaccine, doses: int = 1) -> Vaccine:
        """Stage a decrement of physical stock for administered doses."""
        if not tx.holds(vaccine_lock_key(vaccine.id)):
            raise LedgerLockError(
                f"consume({vaccine.id!r}) called without holding the vaccine lock"
            )
        if vaccine.total_stock < doses:
            reserved = await tx.count_reserved(vaccine.id)
            raise InsufficientStockError(vaccine.id, vaccine.total_stock, reserved)
        updated = vaccine.model_copy(update={"total_stock": vaccine.total_stock - doses})
        tx.update_vaccine(updated)
        return updated
