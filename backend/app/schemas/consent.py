"""Schemas for consent proposal API payloads."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class ConsentProposalCreate(SQLModel):
    """Payload for proposing a safety setting, agreement change or dissolution."""

    subject_type: str = Field(examples=["safety_setting"])
    subject_key: str = Field(examples=["monitoring_interval"])
    payload: dict[str, object] = Field(
        default_factory=dict,
        examples=[{"current_value": 60, "proposed_value": 30}],
    )


class AcknowledgmentRead(SQLModel):
    guardian_id: str
    acknowledged_at: datetime


class ConsentProposalRead(SQLModel):
    """Proposal payload returned by read and transition endpoints."""

    id: UUID
    family_id: str
    subject_type: str
    subject_key: str
    payload: dict[str, object]
    proposer_id: str
    status: str
    is_emergency_increase: bool
    in_effect: bool = False
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    review_expires_at: datetime | None = None
    effective_at: datetime | None = None
    resolved_at: datetime | None = None
    completed_at: datetime | None = None
    resolved_by: str | None = None
    approver_id: str | None = None
    decline_reason: str | None = None
    cancelled_by_uid: str | None = None
    acknowledgments: list[AcknowledgmentRead] = Field(default_factory=list)
    supersedes_proposal_id: UUID | None = None
    superseded_by_id: UUID | None = None
    modification_note: str | None = None
    reverses_proposal_id: UUID | None = None
    disputed_by: str | None = None
    disputed_at: datetime | None = None
    dispute_reason: str | None = None


class ProposalChainRead(SQLModel):
    """Original proposal plus the proposal created from it (counter-proposal or reversal)."""

    original: ConsentProposalRead
    created: ConsentProposalRead


class DeclinePayload(SQLModel):
    reason: str | None = Field(default=None, max_length=500)


class DisputePayload(SQLModel):
    reason: str | None = Field(default=None, max_length=500)


class ModifyPayload(SQLModel):
    """Counter-proposal for a pending agreement change."""

    payload: dict[str, object]
    note: str | None = Field(default=None, max_length=500)


class CooldownRead(SQLModel):
    subject_key: str
    blocked: bool
    cooldown_ends_at: datetime | None = None
    declined_proposal_id: UUID | None = None
