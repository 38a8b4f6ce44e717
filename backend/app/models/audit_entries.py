"""Append-only audit log model for consent transitions."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from app.core.time import utcnow
from app.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class AuditEntry(QueryModel, table=True):
    """Immutable record of one consent transition."""

    __tablename__ = "audit_entries"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    family_id: str = Field(max_length=128, index=True)
    action: str = Field(index=True)
    entity_type: str = Field(default="")
    entity_id: UUID | None = Field(default=None, index=True)
    performed_by: str = Field(max_length=128, index=True)
    performed_at: datetime = Field(default_factory=utcnow)
    details: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
