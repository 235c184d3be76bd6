from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from app.context import get_actor_user_id, get_correlation_id
from app.core.events import event_bus

if TYPE_CHECKING:
    from app.crm.actor import ActorUser

CRM_EVENT_TYPES = (
    "crm.lead.created",
    "crm.lead.promoted",
    "crm.opportunity.created",
    "crm.opportunity.stage_changed",
    "crm.opportunity.closed_won",
    "crm.opportunity.closed_lost",
    "crm.opportunity.converted",
    "crm.task.completed",
)

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, actor_user_id: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id or get_actor_user_id(),
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def emit(event_type: str, actor: ActorUser, payload: dict[str, Any]) -> dict[str, Any]:
    if event_type not in CRM_EVENT_TYPES:
        raise ValueError(f"unregistered CRM event type: {event_type}")
    envelope = build_envelope(event_type, actor.user_id, payload)
    envelope["correlation_id"] = actor.correlation_id
    publish(envelope)
    return envelope


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [envelope for envelope in published_events if envelope.get("event_type") == event_type]
