"""Audit logging service for consent transitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from app.core.time import utcnow
from app.models.audit_entries import AuditEntry

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession


async def record_audit(
    session: AsyncSession,
    *,
    family_id: str,
    action: str,
    performed_by: str,
    entity_type: str = "",
    entity_id: UUID | None = None,
    performed_at: datetime | None = None,
    details: dict[str, object] | None = None,
    commit: bool = True,
) -> AuditEntry:
    """Create an append-only audit log entry."""
    entry = AuditEntry(
        family_id=family_id,
        action=action,
        performed_by=performed_by,
        entity_type=entity_type,
        entity_id=entity_id,
        performed_at=performed_at or utcnow(),
        details=details,
    )
    session.add(entry)
    if commit:
        await session.commit()
        await session.refresh(entry)
    return entry
