"""Fire-and-forget audit logging service."""

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
    user_id: int | None = None,
    actor: str | None = None,
    details: dict | None = None,
) -> None:
    """Stage an audit entry in the caller's transaction.

    Failures are logged and swallowed; the audit trail never blocks a contract.
    """
    try:
        entry = AuditLog(
            user_id=user_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(details, default=str) if details else None,
        )
        db.add(entry)
        await db.flush()
    except Exception:
        logger.exception("Failed to write audit log: %s %s/%s", action, entity_type, entity_id)
