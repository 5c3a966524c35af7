from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from foodcrm.core.context import get_correlation_id
from foodcrm.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def emit(
    event_type: str,
    *,
    actor_user_id: str | None,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Wrap ``payload`` in a domain event envelope and publish it."""
    envelope = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id,
        "payload": payload,
    }
    publish(envelope)
    return envelope


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [event for event in published_events if event.get("event_type") == event_type]
