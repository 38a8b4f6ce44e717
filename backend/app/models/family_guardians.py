"""Guardian membership rows, read-only from the consent workflow's point of view."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from app.core.time import utcnow
from app.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class FamilyGuardian(QueryModel, table=True):
    """A guardian's membership in a family."""

    __tablename__ = "family_guardians"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("family_id", "guardian_id", name="uq_family_guardians_family_guardian"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    family_id: str = Field(max_length=128, index=True)
    guardian_id: str = Field(max_length=128, index=True)
    role: str = Field(default="guardian")
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
