# ruff: noqa: INP001
"""Consent engine lifecycle tests against a SQLite-backed store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from app.core.config import settings
from app.services.consent.engine import ConsentEngine
from app.services.consent.errors import (
    ConsentValidationError,
    CooldownActiveError,
    CoolingPeriodEndedError,
    InvalidStateError,
    ProposalExpiredError,
    ProposalNotFoundError,
    RateLimitedError,
    StaleProposalError,
    UnauthorizedActorError,
)
from app.services.consent.policies import (
    AGREEMENT_CHANGE,
    APPROVED,
    CANCELLED,
    COOLING_PERIOD,
    DECLINED,
    EXPIRED,
    PENDING_APPROVAL,
    SAFETY_SETTING,
    WITHDRAWN,
    build_policies,
)
from app.services.consent.store import SqlProposalStore
from app.services.guardians import SqlGuardianDirectory

FAMILY_ID = "family-1"


async def _propose_setting(
    engine: ConsentEngine,
    *,
    proposer: str = "alice",
    key: str = "monitoring_interval",
    current: int = 60,
    proposed: int = 30,
):
    return await engine.propose(
        family_id=FAMILY_ID,
        subject_type=SAFETY_SETTING,
        subject_key=key,
        proposer_id=proposer,
        payload={"current_value": current, "proposed_value": proposed},
    )


# ---------------------------------------------------------------------------
# Propose
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_propose_stricter_setting_marks_emergency_increase(engine, seed_guardians, clock, publisher):
    await seed_guardians("alice", "bob")

    proposal = await _propose_setting(engine)

    assert proposal.status == PENDING_APPROVAL
    assert proposal.is_emergency_increase is True
    assert proposal.review_expires_at == clock.now() + timedelta(hours=48)
    assert proposal.expires_at == clock.now() + timedelta(hours=72)
    assert proposal.approver_id is None
    assert proposal.resolved_by is None
    assert proposal.effective_at is None
    assert publisher.actions() == ["proposed"]
    assert publisher.events[0].recipient_ids == ("bob",)


@pytest.mark.asyncio
async def test_propose_looser_setting_has_no_review_window(engine, seed_guardians):
    await seed_guardians("alice", "bob")

    proposal = await _propose_setting(engine, current=30, proposed=60)

    assert proposal.is_emergency_increase is False
    assert proposal.review_expires_at is None


@pytest.mark.asyncio
async def test_propose_agreement_change_expires_after_fourteen_days(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")

    proposal = await engine.propose(
        family_id=FAMILY_ID,
        subject_type=AGREEMENT_CHANGE,
        subject_key="terms",
        proposer_id="alice",
        payload={"proposed_value": "Phones charge in the kitchen overnight"},
    )

    assert proposal.expires_at == clock.now() + timedelta(days=14)
    assert proposal.is_emergency_increase is False


@pytest.mark.asyncio
async def test_non_guardian_cannot_propose(engine, seed_guardians):
    await seed_guardians("alice", "bob")

    with pytest.raises(UnauthorizedActorError):
        await _propose_setting(engine, proposer="mallory")


@pytest.mark.asyncio
async def test_unknown_subject_type_is_rejected(engine, seed_guardians):
    await seed_guardians("alice", "bob")

    with pytest.raises(ConsentValidationError, match="Invalid subject_type"):
        await engine.propose(
            family_id=FAMILY_ID,
            subject_type="allowance",
            subject_key="weekly",
            proposer_id="alice",
            payload={},
        )


@pytest.mark.asyncio
async def test_rate_limit_blocks_burst_and_reports_retry_time(session_maker, store, clock, publisher, seed_guardians):
    await seed_guardians("alice", "bob")
    engine = ConsentEngine(
        store=store,
        guardians=SqlGuardianDirectory(session_maker),
        publisher=publisher,
        clock=clock,
        policies=build_policies(settings),
        rate_limit=3,
    )
    first_at = clock.now()
    for minutes in range(3):
        clock.advance(minutes=minutes)
        await _propose_setting(engine, current=60 + minutes, proposed=30)

    with pytest.raises(RateLimitedError) as exc_info:
        await _propose_setting(engine)
    assert exc_info.value.retry_after == first_at + timedelta(hours=1)

    clock.current = first_at + timedelta(hours=1, seconds=1)
    await _propose_setting(engine)


# ---------------------------------------------------------------------------
# Approve / decline
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approving_stricter_change_takes_effect_immediately(engine, seed_guardians, publisher):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, current=60, proposed=30)

    approved = await engine.approve(proposal.id, "bob")

    assert approved.status == APPROVED
    assert approved.approver_id == "bob"
    assert approved.resolved_by == "bob"
    assert approved.effective_at is None
    assert approved.version == proposal.version + 1
    assert engine.is_in_effect(approved) is True
    assert publisher.actions() == ["proposed", "approved"]
    assert publisher.events[-1].recipient_ids == ("alice",)


@pytest.mark.asyncio
async def test_approving_reduction_enters_cooling_period(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, current=30, proposed=60)
    clock.advance(hours=5)

    cooling = await engine.approve(proposal.id, "bob")

    assert cooling.status == COOLING_PERIOD
    assert cooling.effective_at == clock.now() + timedelta(hours=48)
    assert cooling.effective_at > cooling.resolved_at
    assert engine.is_in_effect(cooling) is False

    clock.current = cooling.effective_at - timedelta(seconds=1)
    assert engine.is_in_effect(cooling) is False
    clock.current = cooling.effective_at
    assert engine.is_in_effect(cooling) is True


@pytest.mark.asyncio
async def test_self_approval_fails_before_any_write(session_maker, clock, publisher, seed_guardians):
    class _CountingStore(SqlProposalStore):
        writes = 0

        async def transition(self, *args, **kwargs):
            type(self).writes += 1
            return await super().transition(*args, **kwargs)

    await seed_guardians("alice", "bob")
    store = _CountingStore(session_maker)
    engine = ConsentEngine(
        store=store,
        guardians=SqlGuardianDirectory(session_maker),
        publisher=publisher,
        clock=clock,
    )
    proposal = await _propose_setting(engine)

    with pytest.raises(UnauthorizedActorError):
        await engine.approve(proposal.id, "alice")

    assert _CountingStore.writes == 0
    stored = await store.get(proposal.id)
    assert stored.status == PENDING_APPROVAL
    assert stored.version == proposal.version
    assert stored.approver_id is None


@pytest.mark.asyncio
async def test_non_guardian_cannot_respond(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(UnauthorizedActorError):
        await engine.approve(proposal.id, "mallory")
    with pytest.raises(UnauthorizedActorError):
        await engine.decline(proposal.id, "mallory")


@pytest.mark.asyncio
async def test_decline_records_reason_and_actor(engine, seed_guardians, publisher):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, key="time_limits", current=120, proposed=60)

    declined = await engine.decline(proposal.id, "bob", "Not right now")

    assert declined.status == DECLINED
    assert declined.decline_reason == "Not right now"
    assert declined.approver_id == "bob"
    assert publisher.events[-1].metadata["reason"] == "Not right now"


@pytest.mark.asyncio
async def test_self_decline_is_rejected(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(UnauthorizedActorError):
        await engine.decline(proposal.id, "alice")


@pytest.mark.asyncio
async def test_second_response_after_first_fails_with_invalid_state(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)
    await engine.approve(proposal.id, "bob")

    with pytest.raises(InvalidStateError):
        await engine.decline(proposal.id, "bob")
    with pytest.raises(InvalidStateError):
        await engine.approve(proposal.id, "bob")
    with pytest.raises(InvalidStateError):
        await engine.cancel(proposal.id, "bob")


@pytest.mark.asyncio
async def test_concurrent_approve_and_decline_resolve_exactly_once(engine, store, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    results = await asyncio.gather(
        engine.approve(proposal.id, "bob"),
        engine.decline(proposal.id, "bob"),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStateError)
    stored = await store.get(proposal.id)
    assert stored.status in {APPROVED, DECLINED}
    assert stored.version == proposal.version + 1


@pytest.mark.asyncio
async def test_stale_snapshot_write_is_refused(engine, store, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)
    await engine.approve(proposal.id, "bob")

    with pytest.raises(StaleProposalError):
        await store.transition(
            proposal.id,
            expected_statuses={PENDING_APPROVAL},
            expected_version=proposal.version,
            changes={"status": DECLINED},
        )
    assert (await store.get(proposal.id)).status == APPROVED


@pytest.mark.asyncio
async def test_approve_unknown_or_foreign_proposal_is_not_found(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(ProposalNotFoundError):
        await engine.approve(uuid4(), "bob")
    with pytest.raises(ProposalNotFoundError):
        await engine.approve(proposal.id, "bob", family_id="family-2")


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("canceller", ["alice", "bob"])
async def test_either_party_can_cancel_during_cooling_period(engine, seed_guardians, clock, canceller):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, current=30, proposed=60)
    await engine.approve(proposal.id, "bob")
    clock.advance(hours=47)

    cancelled = await engine.cancel(proposal.id, canceller)

    assert cancelled.status == CANCELLED
    assert cancelled.cancelled_by_uid == canceller
    assert cancelled.effective_at is None
    assert engine.is_in_effect(cancelled) is False


@pytest.mark.asyncio
async def test_cancel_after_effective_time_fails(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, current=30, proposed=60)
    await engine.approve(proposal.id, "bob")
    clock.advance(hours=48, seconds=1)

    with pytest.raises(CoolingPeriodEndedError):
        await engine.cancel(proposal.id, "alice")


@pytest.mark.asyncio
async def test_cancel_requires_a_party_to_the_change(engine, seed_guardians):
    await seed_guardians("alice", "bob", "carol")
    proposal = await _propose_setting(engine, current=30, proposed=60)
    await engine.approve(proposal.id, "bob")

    with pytest.raises(UnauthorizedActorError):
        await engine.cancel(proposal.id, "carol")
    with pytest.raises(UnauthorizedActorError):
        await engine.cancel(proposal.id, "mallory")


@pytest.mark.asyncio
async def test_cancel_outside_cooling_period_is_invalid(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(InvalidStateError):
        await engine.cancel(proposal.id, "alice")


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_declined_subject_is_blocked_for_seven_days(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    declined = await engine.decline(proposal.id, "bob", "Not right now")

    clock.advance(days=3)
    with pytest.raises(CooldownActiveError) as exc_info:
        await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    assert exc_info.value.cooldown_ends_at == declined.resolved_at + timedelta(days=7)
    assert exc_info.value.declined_proposal_id == declined.id

    clock.advance(days=5)
    retried = await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    assert retried.status == PENDING_APPROVAL


@pytest.mark.asyncio
async def test_cooldown_ends_exactly_at_boundary(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    declined = await engine.decline(proposal.id, "bob")

    clock.current = declined.resolved_at + timedelta(days=7)
    status = await engine.get_cooldown(FAMILY_ID, "time_limits", "alice")
    assert status.blocked is False


@pytest.mark.asyncio
async def test_cooldown_reader_requires_a_guardian_viewer(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    await engine.decline(proposal.id, "bob")

    with pytest.raises(UnauthorizedActorError):
        await engine.get_cooldown(FAMILY_ID, "time_limits", "alice", viewer_id="mallory")

    status = await engine.get_cooldown(FAMILY_ID, "time_limits", "alice", viewer_id="alice")
    assert status.blocked is True


@pytest.mark.asyncio
async def test_cooldown_is_scoped_to_the_declined_proposer(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine, key="time_limits", current=120, proposed=60)
    await engine.decline(proposal.id, "bob")

    blocked = await engine.get_cooldown(FAMILY_ID, "time_limits", "alice")
    assert blocked.blocked is True
    assert (await engine.get_cooldown(FAMILY_ID, "time_limits", "bob")).blocked is False
    assert (await engine.get_cooldown(FAMILY_ID, "bedtime_start", "alice")).blocked is False

    other = await _propose_setting(engine, proposer="bob", key="time_limits", current=120, proposed=60)
    assert other.status == PENDING_APPROVAL


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approving_expired_proposal_fails(engine, scanner, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await engine.propose(
        family_id=FAMILY_ID,
        subject_type=AGREEMENT_CHANGE,
        subject_key="terms",
        proposer_id="alice",
        payload={"proposed_value": "No phones at dinner"},
    )
    clock.advance(days=15)

    result = await scanner.run_once()
    assert result.expired == 1

    stored = await engine.get_status(proposal.id)
    assert stored.status == EXPIRED
    with pytest.raises(ProposalExpiredError):
        await engine.approve(proposal.id, "bob")


@pytest.mark.asyncio
async def test_overdue_proposal_is_expired_before_scanner_runs(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)
    clock.advance(hours=72, seconds=1)

    with pytest.raises(ProposalExpiredError):
        await engine.approve(proposal.id, "bob")
    with pytest.raises(ProposalExpiredError):
        await engine.decline(proposal.id, "bob")
    assert await engine.get_pending(FAMILY_ID) == []


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_pending_lists_open_proposals_in_creation_order(engine, seed_guardians, clock):
    await seed_guardians("alice", "bob")
    first = await _propose_setting(engine)
    clock.advance(minutes=1)
    second = await _propose_setting(engine, key="bedtime_start", current=22, proposed=21)
    clock.advance(minutes=1)
    resolved = await _propose_setting(engine, key="age_restriction", current=13, proposed=16)
    await engine.approve(resolved.id, "bob")

    pending = await engine.get_pending(FAMILY_ID, viewer_id="bob")

    assert [proposal.id for proposal in pending] == [first.id, second.id]


@pytest.mark.asyncio
async def test_readers_require_guardian_viewer(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(UnauthorizedActorError):
        await engine.get_pending(FAMILY_ID, viewer_id="mallory")
    with pytest.raises(UnauthorizedActorError):
        await engine.get_status(proposal.id, viewer_id="mallory")
    assert (await engine.get_status(proposal.id, viewer_id="bob")).id == proposal.id


# ---------------------------------------------------------------------------
# Withdraw
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_proposer_can_withdraw_pending_proposal(engine, seed_guardians, publisher):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)

    with pytest.raises(UnauthorizedActorError):
        await engine.withdraw(proposal.id, "bob")
    withdrawn = await engine.withdraw(proposal.id, "alice")

    assert withdrawn.status == WITHDRAWN
    assert withdrawn.resolved_by == "alice"
    assert publisher.actions()[-1] == "withdrawn"
    with pytest.raises(InvalidStateError):
        await engine.approve(proposal.id, "bob")


@pytest.mark.asyncio
async def test_resolved_proposal_cannot_be_withdrawn(engine, seed_guardians):
    await seed_guardians("alice", "bob")
    proposal = await _propose_setting(engine)
    await engine.approve(proposal.id, "bob")

    with pytest.raises(InvalidStateError):
        await engine.withdraw(proposal.id, "alice")
