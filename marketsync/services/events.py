from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from marketsync.core.enums import EventType
from marketsync.models.base import utcnow


logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

EventHandler = Callable[["Event"], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class Event:
    type: EventType
    user_id: uuid.UUID
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=utcnow)


class EventBus:
    """
    In-process push channel for UI-facing notifications.

    Handlers are registered per event type (or `ALL_EVENTS`). A failing handler
    is logged and never propagates into the engine that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        self._handlers.setdefault(str(event_type), []).append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), event_type)

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(str(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_type: EventType, *, user_id: uuid.UUID, payload: dict[str, Any]) -> Event:
        event = Event(type=event_type, user_id=user_id, payload=payload)
        handlers = [*self._handlers.get(str(event_type), []), *self._handlers.get(ALL_EVENTS, [])]
        logger.debug("Emitting %s for user %s to %s handler(s)", event_type, user_id, len(handlers))

        pending: list[Awaitable[None]] = []
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type)
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    logger.error("Async event handler failed for %s: %s", event_type, res)
        return event


class UserEventQueue:
    """Per-user fan-in queue, the shape a websocket/SSE endpoint consumes."""

    def __init__(self, bus: EventBus, user_id: uuid.UUID, *, maxsize: int = 1000) -> None:
        self.user_id = user_id
        self._bus = bus
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        bus.subscribe(ALL_EVENTS, self._on_event)

    def _on_event(self, event: Event) -> None:
        if event.user_id != self.user_id:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full for user %s; dropping %s", self.user_id, event.type)

    def close(self) -> None:
        self._bus.unsubscribe(ALL_EVENTS, self._on_event)
