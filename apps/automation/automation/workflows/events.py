from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Any

from automation.context import get_correlation_id
from automation.core.events import InProcessEventBus, event_bus
from automation.workflows.capabilities import RECENT_HISTORY_SIZE
from automation.workflows.models import utcnow


logger = logging.getLogger("automation.events")


class EventPublisher:
    """Emits entity lifecycle events onto the in-process bus."""

    def __init__(self, bus: InProcessEventBus, history_size: int = RECENT_HISTORY_SIZE) -> None:
        self.bus = bus
        self.published: deque[dict[str, Any]] = deque(maxlen=history_size)

    def publish(
        self,
        entity_type: str,
        entity_id: object,
        event_type: str,
        tenant_id: object,
        payload: dict[str, Any] | None = None,
        *,
        actor_user_id: str | None = None,
    ) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "tenant_id": str(tenant_id),
            "payload": dict(payload or {}),
            "occurred_at": utcnow().isoformat(),
            "correlation_id": get_correlation_id(),
            "actor_user_id": actor_user_id,
        }
        self.published.append(envelope)
        logger.info(
            "event.published",
            extra={
                "event_id": envelope["event_id"],
                "event_name": f"{entity_type}.{event_type}",
                "tenant_id": envelope["tenant_id"],
            },
        )
        self.bus.publish(f"{entity_type}.{event_type}", envelope)
        return envelope


event_publisher = EventPublisher(event_bus)
published_events = event_publisher.published
