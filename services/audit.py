"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
    actor: str = "system",
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit. The entry lands in the caller's transaction,
    so it disappears together with the change it describes on rollback.
    """
    db.session.add(
        AuditLog(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
