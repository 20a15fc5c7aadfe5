"""Audit trail helper shared by the ledger services."""

from typing import Optional

from services.commerce_service.models import AuditEntityType, AuditLog
from sqlalchemy.ext.asyncio import AsyncSession


async def log_audit(
    db: AsyncSession,
    entity_type: AuditEntityType,
    entity_id: int,
    action: str,
    performed_by: str,
    old_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
    notes: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction."""
    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        performed_by=str(performed_by),
        notes=notes,
    )
    db.add(audit_log)
    return audit_log
