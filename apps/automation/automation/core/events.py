import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("automation.events")

WILDCARD = "*"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = [*self._subscribers.get(event_name, []), *self._subscribers.get(WILDCARD, [])]
        for handler in handlers:
            # One failing subscriber must not starve the others.
            try:
                handler(event)
            except Exception as exc:
                logger.exception(
                    "event.handler_failed",
                    extra={"event_name": event_name, "error": str(exc)[:500]},
                )


event_bus = InProcessEventBus()
