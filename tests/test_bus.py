"""Tests for the event bus: subscription, both emit modes, failure isolation."""

from __future__ import annotations

import asyncio
import logging

import pytest

from vaxclinic.domain.bus import EmitMode, EmitResult, EventBus

_TYPE = "vaccine.scheduled"


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


class Boom(RuntimeError):
    pass


async def _fail(event) -> None:
    raise Boom(f"cannot handle {event}")


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


def test_subscribe_same_handler_twice_is_noop(bus, recorder):
    bus.subscribe(_TYPE, recorder)
    bus.subscribe(_TYPE, recorder)

    assert bus.handlers_for(_TYPE) == (recorder,)


def test_unsubscribe_removes_handler(bus, recorder):
    bus.subscribe(_TYPE, recorder)
    bus.unsubscribe(_TYPE, recorder)

    assert bus.handlers_for(_TYPE) == ()


def test_unsubscribe_unknown_handler_warns(bus, recorder, caplog):
    with caplog.at_level(logging.WARNING, logger="vaxclinic.domain.bus"):
        bus.unsubscribe(_TYPE, recorder)

    assert "not found" in caplog.text


@pytest.mark.asyncio
async def test_subscribe_during_dispatch_uses_snapshot(bus, recorder):
    """A handler added mid-dispatch only sees later events."""

    async def late_joiner(event) -> None:
        bus.subscribe(_TYPE, recorder)

    bus.subscribe(_TYPE, late_joiner)

    await bus.publish(_TYPE, "first", mode=EmitMode.WAIT)
    assert recorder.events == []

    await bus.publish(_TYPE, "second", mode=EmitMode.WAIT)
    assert recorder.events == ["second"]


# ---------------------------------------------------------------------------
# Wait mode
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_wait_mode_reports_success_and_failure(bus, recorder):
    """One failing handler does not stop the other; both are reported."""
    bus.subscribe(_TYPE, _fail)
    bus.subscribe(_TYPE, recorder)

    result = await bus.publish(_TYPE, "evt", mode=EmitMode.WAIT)

    assert isinstance(result, EmitResult)
    assert [r.handler for r in result.succeeded] == [recorder]
    assert len(result.failed) == 1
    assert isinstance(result.failed[0].error, Boom)
    assert result.failed[0].name == "_fail"
    assert recorder.events == ["evt"]


@pytest.mark.asyncio
async def test_wait_mode_without_subscribers(bus):
    result = await bus.publish(_TYPE, "evt", mode=EmitMode.WAIT)

    assert result == EmitResult(event_type=_TYPE)


@pytest.mark.asyncio
async def test_handlers_run_concurrently(bus):
    """Two handlers that wait on each other only finish if run side by side."""
    a_started = asyncio.Event()
    b_started = asyncio.Event()

    async def handler_a(event) -> None:
        a_started.set()
        await b_started.wait()

    async def handler_b(event) -> None:
        b_started.set()
        await a_started.wait()

    bus.subscribe(_TYPE, handler_a)
    bus.subscribe(_TYPE, handler_b)

    result = await asyncio.wait_for(bus.publish(_TYPE, "evt", mode=EmitMode.WAIT), timeout=1)
    assert len(result.succeeded) == 2


# ---------------------------------------------------------------------------
# Fire-and-forget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fire_and_forget_returns_before_handlers_finish(bus):
    gate = asyncio.Event()
    finished = []

    async def slow(event) -> None:
        await gate.wait()
        finished.append(event)

    bus.subscribe(_TYPE, slow)

    assert await bus.publish(_TYPE, "evt") is None
    assert finished == []
    assert bus.pending == 1

    gate.set()
    await bus.drain()
    assert finished == ["evt"]
    assert bus.pending == 0


@pytest.mark.asyncio
async def test_fire_and_forget_failure_is_logged_not_raised(bus, recorder, caplog):
    bus.subscribe(_TYPE, _fail)
    bus.subscribe(_TYPE, recorder)

    with caplog.at_level(logging.ERROR, logger="vaxclinic.domain.bus"):
        assert await bus.publish(_TYPE, "evt") is None
        await bus.drain()

    assert recorder.events == ["evt"]
    assert "_fail" in caplog.text
    assert _TYPE in caplog.text


@pytest.mark.asyncio
async def test_fire_and_forget_without_subscribers(bus):
    assert await bus.publish(_TYPE, "evt") is None
    assert bus.pending == 0


@pytest.mark.asyncio
async def test_concurrent_publishes_are_isolated(bus, recorder):
    """Failures in one dispatch do not leak into another running alongside."""
    bus.subscribe(_TYPE, recorder)
    bus.subscribe("stock.low", _fail)

    results = await asyncio.gather(
        bus.publish(_TYPE, "a", mode=EmitMode.WAIT),
        bus.publish("stock.low", "b", mode=EmitMode.WAIT),
        bus.publish(_TYPE, "c", mode=EmitMode.WAIT),
    )

    assert [len(r.failed) for r in results] == [0, 1, 0]
    assert sorted(recorder.events) == ["a", "c"]


@pytest.mark.asyncio
async def test_cancelled_handler_is_reported_as_failure(bus, recorder):
    """A handler raising CancelledError is isolated like any other failure."""

    async def cancelled(event) -> None:
        raise asyncio.CancelledError()

    bus.subscribe(_TYPE, cancelled)
    bus.subscribe(_TYPE, recorder)

    result = await bus.publish(_TYPE, "evt", mode=EmitMode.WAIT)

    assert len(result.succeeded) == 1
    assert len(result.failed) == 1
    assert isinstance(result.failed[0].error, asyncio.CancelledError)
    assert recorder.events == ["evt"]


@pytest.mark.asyncio
async def test_cancelling_the_publisher_still_cancels(bus):
    """Cancelling a waiting publisher is not swallowed by handler isolation."""
    started = asyncio.Event()

    async def blocking(event) -> None:
        started.set()
        await asyncio.Event().wait()

    bus.subscribe(_TYPE, blocking)
    task = asyncio.create_task(bus.publish(_TYPE, "evt", mode=EmitMode.WAIT))
    await started.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
