from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def domain_payload(self) -> dict[str, Any]:
        """Inner payload of a CRM event envelope; empty for plain system events."""
        inner = self.payload.get("payload")
        return inner if isinstance(inner, dict) else {}


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def subscribe_many(self, event_names: Iterable[str], handler: EventHandler) -> None:
        for event_name in event_names:
            self.subscribe(event_name, handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        # handlers run synchronously, inside the publisher's unit of work
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, ())):
            handler(event)

    def clear(self) -> None:
        self._subscribers.clear()


event_bus = InProcessEventBus()
