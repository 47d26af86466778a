"""EventBus: in-process notifications for worker lifecycle changes.

The supervisor publishes ``worker.started`` and ``worker.stopped`` (with a
``reason``). Subscriptions are fnmatch patterns, so ``worker.*`` sees every
worker event. A bounded history backs ``GET /api/events``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from agentplane.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        try:
            self._subscriptions.remove((pattern, handler))
        except ValueError:
            pass

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        """Record the event and deliver it to every matching handler.

        Handlers run concurrently. One that raises is logged and does not
        affect the others or the caller.
        """
        event = Event(topic=topic, data=data or {}, source=source)
        self._history.append(event)

        matching = [h for pattern, h in self._subscriptions if fnmatchcase(topic, pattern)]
        if not matching:
            return event
        outcomes = await asyncio.gather(*(h(event) for h in matching), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                _logger.warning("Handler for %s raised: %s", topic, outcome)
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Newest first."""
        recent = []
        for event in reversed(self._history):
            if len(recent) >= limit:
                break
            if fnmatchcase(event.topic, topic_filter):
                recent.append(event)
        return recent

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def topics(self) -> list[str]:
        return sorted({e.topic for e in self._history})
