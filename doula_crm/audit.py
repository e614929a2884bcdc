from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from doula_crm.context import get_correlation_id


class AuditActor(Protocol):
    user_id: str
    organization_id: uuid.UUID | None
    correlation_id: str | None


audit_entries: list[dict[str, Any]] = []


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor: AuditActor,
    *,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor.user_id,
        "organization_id": str(actor.organization_id) if actor.organization_id is not None else None,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": changed_fields(before, after),
        "correlation_id": actor.correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry
