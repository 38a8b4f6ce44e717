"""Consent proposal endpoints; each route maps onto one engine operation."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Query, status

from app.api.deps import ENGINE_DEP, GUARDIAN_DEP
from app.models.consent_proposals import ConsentProposal
from app.schemas.consent import (
    ConsentProposalCreate,
    ConsentProposalRead,
    CooldownRead,
    DeclinePayload,
    DisputePayload,
    ModifyPayload,
    ProposalChainRead,
)
from app.schemas.errors import ErrorResponse
from app.services.consent.engine import ConsentEngine

router = APIRouter(prefix="/families/{family_id}/consent", tags=["consent"])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_410_GONE: {"model": ErrorResponse},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _to_read(engine: ConsentEngine, proposal: ConsentProposal) -> ConsentProposalRead:
    model = ConsentProposalRead.model_validate(proposal, from_attributes=True)
    model.in_effect = engine.is_in_effect(proposal)
    return model


@router.post(
    "/proposals",
    response_model=ConsentProposalRead,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def create_consent_proposal(
    family_id: str,
    payload: ConsentProposalCreate,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    """Propose a change that the other guardian(s) must consent to."""
    proposal = await engine.propose(
        family_id=family_id,
        subject_type=payload.subject_type,
        subject_key=payload.subject_key,
        proposer_id=guardian_id,
        payload=payload.payload,
    )
    return _to_read(engine, proposal)


@router.get("/proposals/pending", response_model=list[ConsentProposalRead])
async def list_pending_proposals(
    family_id: str,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> list[ConsentProposalRead]:
    """List proposals still waiting for a response."""
    pending = await engine.get_pending(family_id, viewer_id=guardian_id)
    return [_to_read(engine, proposal) for proposal in pending]


@router.get(
    "/proposals/{proposal_id}",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def get_proposal(
    family_id: str,
    proposal_id: UUID,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    proposal = await engine.get_status(proposal_id, family_id=family_id, viewer_id=guardian_id)
    return _to_read(engine, proposal)


@router.get("/cooldown", response_model=CooldownRead)
async def get_cooldown(
    family_id: str,
    subject_key: str = Query(min_length=1, max_length=128),
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> CooldownRead:
    """Report whether the caller may re-propose a recently declined change."""
    result = await engine.get_cooldown(
        family_id,
        subject_key,
        guardian_id,
        viewer_id=guardian_id,
    )
    return CooldownRead(
        subject_key=subject_key,
        blocked=result.blocked,
        cooldown_ends_at=result.cooldown_ends_at,
        declined_proposal_id=result.declined_proposal_id,
    )


@router.post(
    "/proposals/{proposal_id}/approve",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def approve_proposal(
    family_id: str,
    proposal_id: UUID,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    proposal = await engine.approve(proposal_id, guardian_id, family_id=family_id)
    return _to_read(engine, proposal)


@router.post(
    "/proposals/{proposal_id}/decline",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def decline_proposal(
    family_id: str,
    proposal_id: UUID,
    payload: DeclinePayload | None = None,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    reason = payload.reason if payload is not None else None
    proposal = await engine.decline(proposal_id, guardian_id, reason, family_id=family_id)
    return _to_read(engine, proposal)


@router.post(
    "/proposals/{proposal_id}/cancel",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def cancel_proposal(
    family_id: str,
    proposal_id: UUID,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    proposal = await engine.cancel(proposal_id, guardian_id, family_id=family_id)
    return _to_read(engine, proposal)


@router.post(
    "/proposals/{proposal_id}/acknowledge",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def acknowledge_proposal(
    family_id: str,
    proposal_id: UUID,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    proposal = await engine.acknowledge(proposal_id, guardian_id, family_id=family_id)
    return _to_read(engine, proposal)


@router.post(
    "/proposals/{proposal_id}/withdraw",
    response_model=ConsentProposalRead,
    responses=_ERROR_RESPONSES,
)
async def withdraw_proposal(
    family_id: str,
    proposal_id: UUID,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ConsentProposalRead:
    proposal = await engine.withdraw(proposal_id, guardian_id, family_id=family_id)
    return _to_read(engine, proposal)


@router.post(
    "/proposals/{proposal_id}/modify",
    response_model=ProposalChainRead,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def modify_proposal(
    family_id: str,
    proposal_id: UUID,
    payload: ModifyPayload,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ProposalChainRead:
    """Replace a pending agreement change with a counter-proposal."""
    original, counter = await engine.modify(
        proposal_id,
        guardian_id,
        payload.payload,
        payload.note,
        family_id=family_id,
    )
    return ProposalChainRead(original=_to_read(engine, original), created=_to_read(engine, counter))


@router.post(
    "/proposals/{proposal_id}/dispute",
    response_model=ProposalChainRead,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def dispute_proposal(
    family_id: str,
    proposal_id: UUID,
    payload: DisputePayload | None = None,
    guardian_id: str = GUARDIAN_DEP,
    engine: ConsentEngine = ENGINE_DEP,
) -> ProposalChainRead:
    """Contest an emergency increase; opens a reversal proposal."""
    reason = payload.reason if payload is not None else None
    original, reversal = await engine.dispute(proposal_id, guardian_id, reason, family_id=family_id)
    return ProposalChainRead(original=_to_read(engine, original), created=_to_read(engine, reversal))
