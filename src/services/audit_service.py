"""
Audit Service.

Writes immutable audit entries for every state-changing step of the
pipeline and of document review. The audit table is a sink: a failed
write is logged and never interrupts the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from src.db import DatabaseClient, get_db
from src.logging_config import get_logger
from src.schemas.audit import AuditEntry

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditService:
    def __init__(self, db: DatabaseClient | None = None) -> None:
        self._db = db or get_db()

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = SYSTEM_ACTOR,
        changes: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=_serialize_changes(changes or {}),
        )
        try:
            await self._db.insert_audit_entry(entry)
        except Exception as e:
            logger.error("audit_log_error", action=action, entity_id=entity_id, error=str(e))
        return entry


def _serialize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Ensure values are JSON-serializable for jsonb columns."""
    return {key: _serialize_value(value) for key, value in changes.items()}


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    return str(value)
