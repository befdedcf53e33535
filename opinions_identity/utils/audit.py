"""
Structured Audit Logging Utility.

Every identity state change is logged as a structured JSON object.
Provides a Pydantic-validated model and a single function for consistent
audit trail entries, optionally persisted to the ``audit_log`` table.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Union

from pydantic import BaseModel, Field

from opinions_identity.logger import StructuredLogger

if TYPE_CHECKING:
    from opinions_identity.database import DatabaseManager

__all__ = ["AuditEvent", "log_audit_event", "persist_audit_event"]

# ---------------------------------------------------------------------------
# Scalar type permitted inside the ``details`` mapping.  Kept flat; nested
# structures should be modelled explicitly.
# ---------------------------------------------------------------------------
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    db: Optional["DatabaseManager"] = None,
) -> AuditEvent:
    """Log a structured JSON audit event, with optional SQLite persistence.

    Always emits a structured JSON log line via *logger*.  When *db* is
    provided the event is also written to the ``audit_log`` table.
    Persistence errors are logged and never propagated; the audit trail
    must not break the calling operation.

    Args:
        logger: The logger instance to write to.
        action: What happened (e.g. ``"REGISTER"``, ``"ROLE_ASSIGNED"``).
        entity_type: Type of entity affected (e.g. ``"Identity"``).
        entity_id: Primary key of the affected entity.
        user_id: ID of the identity that performed the action, or
            ``"system"`` for startup and background work.
        details: Optional additional context (e.g. old/new values).
        db: Optional database manager used for persistence.

    Returns:
        The validated :class:`AuditEvent`.
    """
    event = AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )
    logger.info(
        "AUDIT: %s",
        json.dumps(event.model_dump(), default=str),
        extra={"event": action},
    )

    if db is not None:
        try:
            persist_audit_event(db, event)
        except Exception as db_err:
            logger.warning(
                "Failed to persist audit event to SQLite: %s", db_err
            )
    return event


def persist_audit_event(db: "DatabaseManager", event: AuditEvent) -> None:
    """Write a validated audit event to the SQLite ``audit_log`` table.

    Holds the database write lock and commits unless a
    :meth:`~opinions_identity.database.DatabaseManager.batch_write`
    block is active, in which case the row joins that transaction.
    """
    with db.write_lock:
        db.sqlite.execute(
            """
            INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.timestamp,
                event.action,
                event.entity_type,
                event.entity_id,
                event.user_id,
                json.dumps(event.details, default=str),
            ),
        )
        if not db.in_batch:
            db.sqlite.commit()
