from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from foodcrm.core.context import get_correlation_id
from foodcrm.models.audit import AuditLog

logger = logging.getLogger("foodcrm.audit")

# CRM mutations land here; role and session changes go to the audit_logs table
audit_entries: list[dict[str, Any]] = []


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
    }
    audit_entries.append(entry)
    logger.info(
        "audit.record",
        extra={"user_id": actor_user_id, "entity_type": entity_type, "entity_id": entity_id, "status": action},
    )
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if (entry["entity_type"], entry["entity_id"]) == (entity_type, entity_id)
    ]


def write_audit_log(
    session: Session,
    *,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Persist a security-relevant change. The caller owns the commit."""
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        event_metadata=metadata or {},
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    session.flush()
    return entry
