"""Tests for the in-app notification handlers and the notification read side."""

from __future__ import annotations

import pytest

from conftest import add_vaccine, reserve_request
from vaxclinic.domain.bus import EmitMode
from vaxclinic.domain.errors import ForbiddenError, NotificationNotFoundError
from vaxclinic.domain.events import (
    Channel,
    EventNames,
    NurseChanged,
    NurseChangedData,
)
from vaxclinic.domain.models import Notification, UpdateSchedulingRequest
from vaxclinic.services.stock_alerts import low_stock_event


def _types_for(ctx, user_id: str) -> list[str]:
    return [n.type for n in ctx.notifications.list_for_user(user_id)]


# ---------------------------------------------------------------------------
# Scheduling notifications
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scheduled_notifies_patient_and_nurse(ctx):
    vaccine = add_vaccine(ctx)

    await ctx.reservations.reserve_dose(reserve_request(vaccine, nurse_id="nurse-1"))
    await ctx.bus.drain()

    assert _types_for(ctx, "patient-0") == ["VACCINE_SCHEDULED"]
    assert _types_for(ctx, "nurse-1") == ["VACCINE_SCHEDULED"]
    nurse_note = ctx.notifications.list_for_user("nurse-1")[0]
    assert "Patient 0" in nurse_note.message


@pytest.mark.asyncio
async def test_nurse_change_notifies_three_people(ctx):
    vaccine = add_vaccine(ctx)
    scheduling = await ctx.reservations.reserve_dose(
        reserve_request(vaccine, nurse_id="nurse-1")
    )

    await ctx.lifecycle.update(scheduling.id, UpdateSchedulingRequest(nurse_id="nurse-2"))
    await ctx.bus.drain()

    assert "NURSE_CHANGED" in _types_for(ctx, "patient-0")
    assert "NURSE_CHANGED" in _types_for(ctx, "nurse-1")
    assert _types_for(ctx, "nurse-2") == ["NURSE_CHANGED"]


@pytest.mark.asyncio
async def test_nurse_change_for_missing_scheduling_fails_in_isolation(ctx, recorder):
    """The registry handler raises; a second handler on the same event still runs."""
    ctx.bus.subscribe(EventNames.NURSE_CHANGED, recorder)
    event = NurseChanged(
        type=EventNames.NURSE_CHANGED,
        data=NurseChangedData(scheduling_id="missing", new_nurse_id="nurse-2"),
    )

    result = await ctx.bus.publish(EventNames.NURSE_CHANGED, event, mode=EmitMode.WAIT)

    assert [r.name for r in result.failed] == ["HandlerRegistry.on_nurse_changed"]
    assert isinstance(result.failed[0].error, LookupError)
    assert len(result.succeeded) == 1
    assert recorder.events == [event]


@pytest.mark.asyncio
async def test_events_without_in_app_channel_are_ignored(ctx):
    vaccine = add_vaccine(ctx, total_stock=1, min_stock_level=5)
    event = low_stock_event(vaccine).model_copy(update={"channels": [Channel.EMAIL]})

    result = await ctx.bus.publish(EventNames.LOW_STOCK, event, mode=EmitMode.WAIT)

    assert result.failed == []
    assert ctx.notifications.list_for_user("manager-1") == []


@pytest.mark.asyncio
async def test_low_stock_notifies_managers_with_priority(ctx):
    vaccine = add_vaccine(ctx, total_stock=1, min_stock_level=5)

    await ctx.bus.publish(EventNames.LOW_STOCK, low_stock_event(vaccine), mode=EmitMode.WAIT)

    notes = ctx.notifications.list_for_user("manager-1")
    assert [n.type for n in notes] == ["LOW_STOCK"]
    assert notes[0].metadata["priority"] == "urgent"
    assert notes[0].metadata["stock_percentage"] == 20
    assert ctx.notifications.list_for_user("nurse-1") == []


# ---------------------------------------------------------------------------
# Notification service
# ---------------------------------------------------------------------------


def _seed_notifications(ctx) -> list[Notification]:
    notes = [
        Notification(user_id="patient-0", type="T", title="one", message="1"),
        Notification(user_id="patient-0", type="T", title="two", message="2"),
        Notification(user_id="patient-1", type="T", title="other", message="3"),
    ]
    for n in notes:
        ctx.db.notifications.add(n)
    return notes


def test_mark_as_read_and_unread_count(ctx):
    notes = _seed_notifications(ctx)
    assert ctx.notifications.unread_count("patient-0") == 2

    read = ctx.notifications.mark_as_read(notes[0].id, "patient-0")

    assert read.is_read is True
    assert ctx.notifications.unread_count("patient-0") == 1
    assert [n.id for n in ctx.notifications.list_for_user("patient-0", unread_only=True)] == [
        notes[1].id
    ]


def test_mark_as_read_rejects_other_users(ctx):
    notes = _seed_notifications(ctx)

    with pytest.raises(ForbiddenError):
        ctx.notifications.mark_as_read(notes[2].id, "patient-0")
    with pytest.raises(NotificationNotFoundError):
        ctx.notifications.mark_as_read("missing", "patient-0")


def test_mark_all_as_read(ctx):
    _seed_notifications(ctx)

    assert ctx.notifications.mark_all_as_read("patient-0") == 2
    assert ctx.notifications.unread_count("patient-0") == 0
    assert ctx.notifications.unread_count("patient-1") == 1
