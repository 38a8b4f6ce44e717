"""Consent proposal model shared by safety settings, agreement changes and dissolution."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field

from app.core.time import utcnow
from app.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

ACTIVE_DISSOLUTION_WHERE = (
    "subject_type = 'dissolution' "
    "AND status IN ('pending_approval', 'pending_acknowledgment', 'cooling_period')"
)


class ConsentProposal(QueryModel, table=True):
    """Durable record of a change awaiting multi-party consent.

    ``version`` is bumped by every conditional write and acts as the optimistic
    concurrency token.
    """

    __tablename__ = "consent_proposals"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        Index(
            "uq_consent_proposals_active_dissolution",
            "family_id",
            unique=True,
            postgresql_where=text(ACTIVE_DISSOLUTION_WHERE),
            sqlite_where=text(ACTIVE_DISSOLUTION_WHERE),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    family_id: str = Field(max_length=128, index=True)
    subject_type: str = Field(index=True)
    subject_key: str = Field(index=True)
    payload: dict[str, object] = Field(default_factory=dict, sa_column=Column(JSON))
    proposer_id: str = Field(max_length=128, index=True)
    status: str = Field(default="pending_approval", index=True)
    is_emergency_increase: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = Field(default=None, index=True)
    review_expires_at: datetime | None = None
    effective_at: datetime | None = Field(default=None, index=True)
    resolved_at: datetime | None = None
    completed_at: datetime | None = None

    resolved_by: str | None = Field(default=None, max_length=128)
    approver_id: str | None = Field(default=None, max_length=128)
    decline_reason: str | None = Field(default=None, max_length=500)
    cancelled_by_uid: str | None = Field(default=None, max_length=128)
    acknowledgments: list[dict[str, object]] = Field(
        default_factory=list, sa_column=Column(JSON)
    )

    # Agreement modification chain
    supersedes_proposal_id: UUID | None = Field(default=None, index=True)
    superseded_by_id: UUID | None = None
    modification_note: str | None = Field(default=None, max_length=500)

    # Emergency-increase dispute
    reverses_proposal_id: UUID | None = Field(default=None, index=True)
    disputed_by: str | None = Field(default=None, max_length=128)
    disputed_at: datetime | None = None
    dispute_reason: str | None = Field(default=None, max_length=500)

    version: int = Field(default=1)
