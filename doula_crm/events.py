"""In-process domain events.

Every CRM mutation publishes a versioned envelope. Envelopes are kept in
``published_events`` for inspection and dispatched synchronously to any
subscriber registered on ``bus``.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from doula_crm.context import get_correlation_id

ENVELOPE_VERSION = 1


@dataclass
class DomainEvent:
    event_type: str
    envelope: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def dispatch(self, event_type: str, envelope: dict[str, Any]) -> None:
        event = DomainEvent(event_type=event_type, envelope=envelope)
        for handler in list(self._handlers.get(event_type, [])):
            handler(event)


bus = EventBus()
published_events: list[dict[str, Any]] = []


def build_envelope(
    event_type: str,
    *,
    actor_user_id: str,
    organization_id: uuid.UUID | str | None,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "organization_id": str(organization_id) if organization_id is not None else None,
        "correlation_id": correlation_id or get_correlation_id(),
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }


def publish(
    event_type: str,
    *,
    actor_user_id: str,
    organization_id: uuid.UUID | str | None,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    envelope = build_envelope(
        event_type,
        actor_user_id=actor_user_id,
        organization_id=organization_id,
        payload=payload,
        correlation_id=correlation_id,
    )
    published_events.append(envelope)
    bus.dispatch(event_type, envelope)
    return envelope
