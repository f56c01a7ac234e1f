"""Event bus for loose-coupled extensibility.

Provides a lightweight publish/subscribe system that lets components
communicate without direct dependencies. Hooks can be sync or async.

Usage::

    from workfleet.core.events import EventBus, Event
    from workfleet.orchestration.events import ALL_EVENT_TYPES, GOAL_COMPLETED

    bus = EventBus(known_events=ALL_EVENT_TYPES)

    async def notify(event: Event) -> None:
        print(f"Goal done: {event.goal_id}")

    bus.on(GOAL_COMPLETED, notify)
    await bus.publish(GOAL_COMPLETED, {"goal_id": "g1"}, source="daemon")
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable, Collection, Mapping
from dataclasses import dataclass, field
from time import time
from typing import Any

from loguru import logger

# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    """An immutable event that flows through the bus."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time)
    source: str = ""

    @property
    def goal_id(self) -> str | None:
        return self.payload.get("goal_id")

    @property
    def work_item_id(self) -> str | None:
        return self.payload.get("work_item_id")

    @property
    def run_id(self) -> str | None:
        return self.payload.get("run_id")


Hook = Callable[[Event], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class EventBus:
    """Pub/sub bus with sync and async hooks.

    When *known_events* is given, subscribing to or emitting any other name
    raises ValueError, so a typo in an event name fails loudly instead of
    silently never firing.
    """

    def __init__(self, known_events: Collection[str] | None = None) -> None:
        self._known = frozenset(known_events) if known_events is not None else None
        self._hooks: dict[str, list[Hook]] = defaultdict(list)
        self._wildcard_hooks: list[Hook] = []

    def _check_name(self, event_name: str) -> None:
        if self._known is not None and event_name not in self._known:
            raise ValueError(f"Unknown event name: {event_name}")

    def on(self, event_name: str, hook: Hook) -> None:
        """Register *hook* for a specific event name."""
        self._check_name(event_name)
        self._hooks[event_name].append(hook)

    def on_all(self, hook: Hook) -> None:
        """Register *hook* for all events (wildcard)."""
        self._wildcard_hooks.append(hook)

    def off(self, event_name: str, hook: Hook) -> None:
        """Unregister *hook* from *event_name* and from the wildcard list."""
        hooks = self._hooks.get(event_name, [])
        if hook in hooks:
            hooks.remove(hook)
        if hook in self._wildcard_hooks:
            self._wildcard_hooks.remove(hook)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._hooks.get(event_name, [])) + len(self._wildcard_hooks)

    async def emit(self, event: Event) -> None:
        """Emit an event, running all matching hooks in registration order."""
        self._check_name(event.name)
        hooks = list(self._hooks.get(event.name, []))
        hooks.extend(self._wildcard_hooks)
        for hook in hooks:
            try:
                result = hook(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Event hook failed for {event.name}: {exc}")

    async def publish(self, event_name: str, payload: Mapping[str, Any] | None = None, *, source: str = "") -> Event:
        """Build an :class:`Event` from *payload*, emit it and return it."""
        event = Event(name=event_name, payload=dict(payload or {}), source=source)
        await self.emit(event)
        return event
