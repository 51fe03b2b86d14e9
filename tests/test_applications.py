"""Tests for recording an administered dose."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, add_batch, add_vaccine, reserve_request
from vaxclinic.domain.errors import (
    BatchNotAvailableError,
    BatchNotFoundError,
    SchedulingNotFoundError,
    ValidationError,
)
from vaxclinic.domain.events import EventNames
from vaxclinic.domain.models import BatchStatus, SchedulingStatus


async def _setup(ctx, **vaccine_overrides):
    vaccine = add_vaccine(ctx, **vaccine_overrides)
    batch = add_batch(ctx, vaccine)
    scheduling = await ctx.reservations.reserve_dose(reserve_request(vaccine))
    return vaccine, batch, scheduling


@pytest.mark.asyncio
async def test_record_application_consumes_stock(ctx):
    """Stock and batch drop by one, the scheduling completes, availability holds."""
    vaccine, batch, scheduling = await _setup(ctx, total_stock=5)

    application = await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")

    assert application.scheduling_id == scheduling.id
    assert application.dose_number == 1
    assert application.applied_at == NOW
    assert ctx.db.applications.get_by_scheduling(scheduling.id) == application
    assert ctx.db.vaccines.get(vaccine.id).total_stock == 4
    assert ctx.db.batches.get(batch.id).quantity == 4
    assert ctx.db.schedulings.get(scheduling.id).status == SchedulingStatus.COMPLETED

    async with ctx.db.transaction() as tx:
        await ctx.ledger.lock_for_update(tx, vaccine.id)
        stock = await ctx.ledger.get_available(tx, vaccine.id)
    assert stock.available == 4


@pytest.mark.asyncio
async def test_record_application_notifies_patient(ctx):
    _, batch, scheduling = await _setup(ctx)

    await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")
    await ctx.bus.drain()

    types = [n.type for n in ctx.notifications.list_for_user("patient-0")]
    assert "VACCINE_APPLIED" in types


@pytest.mark.asyncio
async def test_record_application_below_minimum_raises_low_stock(ctx, recorder):
    _, batch, scheduling = await _setup(ctx, total_stock=3, min_stock_level=3)
    ctx.bus.subscribe(EventNames.LOW_STOCK, recorder)

    await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")
    await ctx.bus.drain()

    assert len(recorder.events) == 1
    assert recorder.events[0].data.current_stock == 2


@pytest.mark.asyncio
async def test_cannot_apply_twice(ctx):
    _, batch, scheduling = await _setup(ctx)
    await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")

    with pytest.raises(ValidationError, match="COMPLETED"):
        await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")


@pytest.mark.asyncio
async def test_cannot_apply_cancelled(ctx):
    _, batch, scheduling = await _setup(ctx)
    await ctx.lifecycle.cancel(scheduling.id)

    with pytest.raises(SchedulingNotFoundError):
        await ctx.applications.record(scheduling.id, batch.id, applied_by_id="nurse-1")


@pytest.mark.asyncio
async def test_batch_checks(ctx):
    vaccine, batch, scheduling = await _setup(ctx)
    other = add_vaccine(ctx, name="Influenza")
    foreign = add_batch(ctx, other, batch_number="FLU-1")
    expired = add_batch(ctx, vaccine, batch_number="OLD", expiration_date=NOW - timedelta(days=1))
    discarded = add_batch(ctx, vaccine, batch_number="BIN", status=BatchStatus.DISCARDED)
    empty = add_batch(ctx, vaccine, batch_number="EMPTY", quantity=0)

    with pytest.raises(BatchNotFoundError):
        await ctx.applications.record(scheduling.id, "missing", applied_by_id="nurse-1")
    with pytest.raises(ValidationError, match="does not belong"):
        await ctx.applications.record(scheduling.id, foreign.id, applied_by_id="nurse-1")
    for bad in (expired, discarded, empty):
        with pytest.raises(BatchNotAvailableError):
            await ctx.applications.record(scheduling.id, bad.id, applied_by_id="nurse-1")

    # Nothing was consumed by the failed attempts.
    assert ctx.db.vaccines.get(vaccine.id).total_stock == vaccine.total_stock
    assert ctx.db.schedulings.get(scheduling.id).status == SchedulingStatus.SCHEDULED
