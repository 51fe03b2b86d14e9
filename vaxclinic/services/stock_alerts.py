"""Checks a periodic job runs to warn managers about stock and batches."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from vaxclinic.domain.bus import EventPublisher
from vaxclinic.domain.events import (
    BatchExpiring,
    BatchExpiringData,
    EventMetadata,
    EventNames,
    LowStock,
    LowStockData,
    Priority,
)
from vaxclinic.domain.models import BatchStatus, Vaccine, VaccineBatch

logger = logging.getLogger(__name__)

URGENT_STOCK_PERCENTAGE = 50
URGENT_EXPIRY_DAYS = 7


def stock_percentage(vaccine: Vaccine) -> int:
    if vaccine.min_stock_level == 0:
        return 100
    return round(vaccine.total_stock / vaccine.min_stock_level * 100)


def low_stock_event(vaccine: Vaccine) -> LowStock:
    percentage = stock_percentage(vaccine)
    return LowStock(
        type=EventNames.LOW_STOCK,
        data=LowStockData(
            vaccine_id=vaccine.id,
            vaccine_name=vaccine.name,
            manufacturer=vaccine.manufacturer,
            current_stock=vaccine.total_stock,
            min_stock_level=vaccine.min_stock_level,
            stock_percentage=percentage,
        ),
        priority=Priority.URGENT if percentage < URGENT_STOCK_PERCENTAGE else Priority.HIGH,
        metadata=EventMetadata(source="stock_alerts", triggered_by="system"),
    )


async def check_low_stock(vaccines: list[Vaccine], bus: EventPublisher) -> list[str]:
    """Publish ``stock.low`` for every live vaccine below its minimum level.

    Returns the ids of the vaccines reported.
    """
    reported: list[str] = []
    for vaccine in vaccines:
        if vaccine.deleted_at is not None:
            continue
        if vaccine.total_stock >= vaccine.min_stock_level:
            continue
        await bus.publish(EventNames.LOW_STOCK, low_stock_event(vaccine))
        reported.append(vaccine.id)

    if reported:
        logger.info("Low stock reported for %d vaccine(s)", len(reported))
    return reported


async def check_expiring_batches(
    batches: list[VaccineBatch],
    vaccines: list[Vaccine],
    bus: EventPublisher,
    now: datetime,
    threshold_days: int,
) -> list[str]:
    """Publish ``batch.expiring`` for available batches close to expiry.

    A batch qualifies when it expires after *now* but within
    *threshold_days*. Returns the ids of the batches reported.
    """
    by_id = {v.id: v for v in vaccines}
    horizon = now + timedelta(days=threshold_days)
    reported: list[str] = []

    for batch in batches:
        if batch.status != BatchStatus.AVAILABLE:
            continue
        if not (now < batch.expiration_date <= horizon):
            continue
        vaccine = by_id.get(batch.vaccine_id)
        if vaccine is None:
            logger.warning("Batch %s references unknown vaccine %s", batch.id, batch.vaccine_id)
            continue

        days_left = (batch.expiration_date - now).days
        event = BatchExpiring(
            type=EventNames.BATCH_EXPIRING,
            data=BatchExpiringData(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                vaccine_id=vaccine.id,
                vaccine_name=vaccine.name,
                manufacturer=vaccine.manufacturer,
                expiration_date=batch.expiration_date,
                days_until_expiration=days_left,
                current_quantity=batch.quantity,
            ),
            priority=Priority.URGENT if days_left <= URGENT_EXPIRY_DAYS else Priority.HIGH,
            metadata=EventMetadata(source="stock_alerts", triggered_by="system"),
        )
        await bus.publish(EventNames.BATCH_EXPIRING, event)
        reported.append(batch.id)

    if reported:
        logger.info("Expiring batches reported: %d", len(reported))
    return reported
