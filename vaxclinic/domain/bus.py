"""In-process asynchronous event bus.

Handlers are async callables registered per event type. On publish every
handler for the type runs concurrently, each inside its own error boundary,
so one failing handler never stops the others or reaches the publisher.

Two emission modes:

* ``EmitMode.FIRE_AND_FORGET`` (default) schedules the dispatch as a
  background task and returns ``None`` at once. Failures are only logged.
* ``EmitMode.WAIT`` awaits every handler and returns an ``EmitResult`` listing
  which handlers succeeded and which failed.

Nothing is persisted: an event published with no subscriber, or still in
flight when the process stops, is lost.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from vaxclinic.domain.models import StrEnum

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class EmitMode(StrEnum):
    FIRE_AND_FORGET = "fire_and_forget"
    WAIT = "wait"


def handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


@dataclass
class HandlerResult:
    handler: EventHandler
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def name(self) -> str:
        return handler_name(self.handler)


@dataclass
class EmitResult:
    event_type: str
    succeeded: list[HandlerResult] = field(default_factory=list)
    failed: list[HandlerResult] = field(default_factory=list)


class EventPublisher(Protocol):
    """The narrow interface services depend on."""

    async def publish(
        self, event_type: str, event: Any, mode: EmitMode = EmitMode.FIRE_AND_FORGET
    ) -> EmitResult | None: ...


class EventBus:
    """Publish/subscribe bus keyed by event-type string.

    The subscriber table maps each type to a tuple. Writers swap in a new
    tuple, so a dispatch always iterates the snapshot it started with.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, tuple[EventHandler, ...]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        current = self._subscribers.get(event_type, ())
        if handler in current:
            logger.debug(
                "Handler %s already subscribed to '%s'", handler_name(handler), event_type
            )
            return
        self._subscribers[event_type] = (*current, handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        current = self._subscribers.get(event_type, ())
        if handler not in current:
            logger.warning(
                "Handler %s not found for event '%s'", handler_name(handler), event_type
            )
            return
        remaining = tuple(h for h in current if h != handler)
        if remaining:
            self._subscribers[event_type] = remaining
        else:
            del self._subscribers[event_type]

    def handlers_for(self, event_type: str) -> tuple[EventHandler, ...]:
        return self._subscribers.get(event_type, ())

    async def publish(
        self,
        event_type: str,
        event: Any,
        mode: EmitMode = EmitMode.FIRE_AND_FORGET,
    ) -> EmitResult | None:
        handlers = self.handlers_for(event_type)
        if not handlers:
            logger.debug("No handlers registered for '%s'; event dropped", event_type)
            return EmitResult(event_type=event_type) if mode == EmitMode.WAIT else None

        if mode == EmitMode.WAIT:
            return await self._dispatch(event_type, event, handlers)

        task = asyncio.get_running_loop().create_task(
            self._dispatch(event_type, event, handlers),
            name=f"dispatch:{event_type}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return None

    async def drain(self) -> None:
        """Wait for every background dispatch started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _dispatch(
        self, event_type: str, event: Any, handlers: tuple[EventHandler, ...]
    ) -> EmitResult:
        results = await asyncio.gather(
            *(self._invoke(event_type, handler, event) for handler in handlers)
        )

        outcome = EmitResult(event_type=event_type)
        for result in results:
            (outcome.succeeded if result.ok else outcome.failed).append(result)

        logger.debug(
            "Event '%s' completed: %d succeeded, %d failed",
            event_type,
            len(outcome.succeeded),
            len(outcome.failed),
        )
        return outcome

    async def _invoke(
        self, event_type: str, handler: EventHandler, event: Any
    ) -> HandlerResult:
        try:
            await handler(event)
        except asyncio.CancelledError as exc:
            # A cancelled dispatch still surfaces through gather(), which
            # remembers the outer cancel request.
            logger.warning(
                "Handler %s was cancelled for event '%s'", handler_name(handler), event_type
            )
            return HandlerResult(handler=handler, error=exc)
        except Exception as exc:
            logger.exception(
                "Handler %s failed for event '%s'", handler_name(handler), event_type
            )
            return HandlerResult(handler=handler, error=exc)
        return HandlerResult(handler=handler)
