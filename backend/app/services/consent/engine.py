"""Consent state machine shared by safety settings, agreement changes and dissolution.

The engine is stateless between calls. Each operation loads a snapshot, checks
authorization and preconditions against it, then asks the store for a conditional
write keyed on the snapshot's status and version. Side effects are published
after the write commits.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from app.core.logging import get_logger
from app.core.time import system_clock
from app.models.consent_proposals import ConsentProposal
from app.services.consent.cooldown import CooldownGuard, CooldownStatus
from app.services.consent.errors import (
    ActiveProposalConflictError,
    AlreadyAcknowledgedError,
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
from app.services.consent.events import ConsentEvent
from app.services.consent.policies import (
    ACTIVE_STATUSES,
    AGREEMENT_CHANGE,
    APPROVED,
    CANCELLED,
    COMPLETED,
    COOLING_PERIOD,
    DECLINED,
    DISSOLUTION,
    EXPIRED,
    MODIFIED,
    PENDING_ACKNOWLEDGMENT,
    PENDING_APPROVAL,
    PENDING_STATUSES,
    WITHDRAWN,
    SubjectPolicy,
    build_policies,
)
from app.services.consent.restrictiveness import classify_payload
from app.services.consent.validation import (
    validate_identifier,
    validate_payload,
    validate_reason,
)
from app.services.guardians import guardian_ids

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping
    from datetime import datetime
    from uuid import UUID

    from app.core.time import Clock
    from app.services.consent.events import EventPublisher
    from app.services.consent.store import ProposalStore
    from app.services.guardians import GuardianDirectory, GuardianRecord

logger = get_logger(__name__)


def is_in_effect(proposal: ConsentProposal, now: datetime) -> bool:
    """Whether consumers should apply the proposed change at ``now``."""
    if proposal.status in (APPROVED, COMPLETED):
        return True
    if proposal.status == COOLING_PERIOD:
        return proposal.effective_at is not None and proposal.effective_at <= now
    return False


class ConsentEngine:
    """Propose / approve / decline / cancel / acknowledge and the supplementary flows."""

    def __init__(
        self,
        *,
        store: ProposalStore,
        guardians: GuardianDirectory,
        publisher: EventPublisher,
        clock: Clock = system_clock,
        policies: dict[str, SubjectPolicy] | None = None,
        rate_limit: int = 10,
        rate_window: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.guardians = guardians
        self.publisher = publisher
        self.clock = clock
        self.policies = policies if policies is not None else build_policies()
        self.rate_limit = rate_limit
        self.rate_window = rate_window
        self.cooldown = CooldownGuard(store, clock, self.policies)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _policy(self, subject_type: str) -> SubjectPolicy:
        policy = self.policies.get(subject_type)
        if policy is None:
            raise ConsentValidationError(
                f"Invalid subject_type. Must be one of: {', '.join(sorted(self.policies))}",
            )
        return policy

    async def _load(self, proposal_id: UUID, family_id: str | None) -> ConsentProposal:
        proposal = await self.store.get(proposal_id)
        if proposal is None or (family_id is not None and proposal.family_id != family_id):
            raise ProposalNotFoundError(proposal_id=proposal_id)
        return proposal

    async def _require_guardian(self, family_id: str, actor_id: str) -> list[GuardianRecord]:
        guardians = await self.guardians.list_guardians(family_id)
        if actor_id not in guardian_ids(guardians):
            raise UnauthorizedActorError("Only a guardian of this family can do this.")
        return guardians

    def _require_unexpired(self, proposal: ConsentProposal, now: datetime) -> None:
        if proposal.expires_at is not None and now > proposal.expires_at:
            raise ProposalExpiredError(expires_at=proposal.expires_at)

    def _require_pending_approval(self, proposal: ConsentProposal, now: datetime) -> None:
        if proposal.status == EXPIRED:
            raise ProposalExpiredError(expires_at=proposal.expires_at)
        if proposal.status != PENDING_APPROVAL:
            raise InvalidStateError(status=proposal.status)
        self._require_unexpired(proposal, now)

    async def _transition(
        self,
        proposal: ConsentProposal,
        *,
        expected: Collection[str],
        changes: Mapping[str, Any],
    ) -> ConsentProposal:
        try:
            return await self.store.transition(
                proposal.id,
                expected_statuses=expected,
                expected_version=proposal.version,
                changes=changes,
            )
        except StaleProposalError as exc:
            raise InvalidStateError(proposal_id=proposal.id) from exc

    async def _emit(self, event: ConsentEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.warning(
                "consent.event.publish_failed",
                exc_info=True,
                extra={"action": event.action, "proposal_id": str(event.proposal_id)},
            )
        logger.info(
            f"consent.proposal.{event.action}",
            extra={
                "proposal_id": str(event.proposal_id),
                "family_id": event.family_id,
                "subject_type": event.subject_type,
                "status": event.status,
                "actor_id": event.performed_by,
            },
        )

    async def _check_rate_limit(self, family_id: str, proposer_id: str, now: datetime) -> None:
        """Reject the proposal once the proposer hit the hourly limit.

        The count and the later insert are separate reads, so proposals racing
        from the same guardian can overshoot the limit by the number in flight.
        """
        recent = await self.store.recent_proposal_times(
            family_id,
            proposer_id,
            since=now - self.rate_window,
        )
        if len(recent) >= self.rate_limit:
            raise RateLimitedError(retry_after=min(recent) + self.rate_window)

    async def _build_proposal(
        self,
        *,
        family_id: str,
        subject_type: str,
        subject_key: str,
        proposer_id: str,
        payload: object,
        guardians: list[GuardianRecord],
        now: datetime,
        skip_cooldown: bool = False,
        **links: Any,
    ) -> ConsentProposal:
        """Validate and classify a new proposal without writing it."""
        policy = self._policy(subject_type)
        normalized = validate_payload(policy, subject_key, payload)

        await self._check_rate_limit(family_id, proposer_id, now)
        if not skip_cooldown:
            status: CooldownStatus = await self.cooldown.is_blocked(
                family_id,
                subject_key,
                proposer_id,
            )
            if status.blocked and status.cooldown_ends_at and status.declined_proposal_id:
                raise CooldownActiveError(
                    cooldown_ends_at=status.cooldown_ends_at,
                    declined_proposal_id=status.declined_proposal_id,
                )

        restrictiveness = classify_payload(subject_type, subject_key, normalized)
        # A reversal undoes an emergency increase, so it always counts as a reduction.
        is_reversal = links.get("reverses_proposal_id") is not None
        emergency = (
            restrictiveness.more_restrictive
            and policy.emergency_review is not None
            and not is_reversal
        )
        proposal = ConsentProposal(
            family_id=family_id,
            subject_type=subject_type,
            subject_key=subject_key,
            payload=normalized,
            proposer_id=proposer_id,
            status=PENDING_APPROVAL,
            is_emergency_increase=emergency,
            created_at=now,
            updated_at=now,
            expires_at=now + policy.response_window if policy.response_window else None,
            review_expires_at=now + policy.emergency_review if emergency else None,
            acknowledgments=[],
            **links,
        )

        if policy.uses_acknowledgment:
            others = guardian_ids(guardians) - {proposer_id}
            if not others:
                # Sole guardian: nobody to consent, so the grace window starts now.
                proposal.status = COOLING_PERIOD
                proposal.resolved_at = now
                proposal.resolved_by = proposer_id
                proposal.effective_at = now + policy.cooling_period_for(normalized)
            elif len(others) >= 2:
                proposal.status = PENDING_ACKNOWLEDGMENT
        return proposal

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def propose(
        self,
        *,
        family_id: str,
        subject_type: str,
        subject_key: str,
        proposer_id: str,
        payload: object,
    ) -> ConsentProposal:
        """Create a proposal and notify the other guardians."""
        validate_identifier(family_id, field_name="family_id")
        validate_identifier(proposer_id, field_name="proposer_id")
        self._policy(subject_type)
        guardians = await self._require_guardian(family_id, proposer_id)
        now = self.clock.now()

        if subject_type == DISSOLUTION:
            active = await self.store.find_active(
                family_id,
                DISSOLUTION,
                statuses=ACTIVE_STATUSES,
            )
            if active is not None:
                raise InvalidStateError(
                    "A family dissolution is already in progress.",
                    proposal_id=active.id,
                )

        proposal = await self._build_proposal(
            family_id=family_id,
            subject_type=subject_type,
            subject_key=subject_key,
            proposer_id=proposer_id,
            payload=payload,
            guardians=guardians,
            now=now,
        )
        try:
            proposal = await self.store.insert(proposal)
        except ActiveProposalConflictError as exc:
            raise InvalidStateError("A family dissolution is already in progress.") from exc
        await self._emit(
            ConsentEvent.for_proposal(
                proposal,
                action="proposed",
                performed_by=proposer_id,
                performed_at=now,
                recipient_ids=[g.uid for g in guardians],
                is_emergency_increase=proposal.is_emergency_increase,
                expires_at=proposal.expires_at,
                effective_at=proposal.effective_at,
            ),
        )
        return proposal

    async def approve(
        self,
        proposal_id: UUID,
        approver_id: str,
        *,
        family_id: str | None = None,
    ) -> ConsentProposal:
        """Approve a pending proposal from another guardian.

        Restrictiveness is re-derived from the stored payload; a protection
        reduction or a dispute reversal enters the cooling period instead of taking
        effect.
        """
        proposal = await self._load(proposal_id, family_id)
        if approver_id == proposal.proposer_id:
            raise UnauthorizedActorError("You cannot approve your own proposal.")
        await self._require_guardian(proposal.family_id, approver_id)
        now = self.clock.now()
        self._require_pending_approval(proposal, now)

        policy = self._policy(proposal.subject_type)
        restrictiveness = classify_payload(
            proposal.subject_type,
            proposal.subject_key,
            proposal.payload,
        )
        changes: dict[str, Any] = {
            "resolved_at": now,
            "resolved_by": approver_id,
            "approver_id": approver_id,
            "updated_at": now,
        }
        if restrictiveness.protection_reduction or proposal.reverses_proposal_id is not None:
            changes["status"] = COOLING_PERIOD
            changes["effective_at"] = now + policy.cooling_period_for(proposal.payload)
        else:
            changes["status"] = APPROVED

        updated = await self._transition(proposal, expected={PENDING_APPROVAL}, changes=changes)
        await self._emit(
            ConsentEvent.for_proposal(
                updated,
                action="approved",
                performed_by=approver_id,
                performed_at=now,
                recipient_ids=[updated.proposer_id],
                effective_at=updated.effective_at,
            ),
        )
        return updated

    async def decline(
        self,
        proposal_id: UUID,
        decliner_id: str,
        reason: str | None = None,
        *,
        family_id: str | None = None,
    ) -> ConsentProposal:
        proposal = await self._load(proposal_id, family_id)
        if decliner_id == proposal.proposer_id:
            raise UnauthorizedActorError("You cannot decline your own proposal.")
        await self._require_guardian(proposal.family_id, decliner_id)
        reason = validate_reason(reason, field_name="reason")
        now = self.clock.now()
        self._require_pending_approval(proposal, now)

        updated = await self._transition(
            proposal,
            expected={PENDING_APPROVAL},
            changes={
                "status": DECLINED,
                "decline_reason": reason,
                "resolved_at": now,
                "resolved_by": decliner_id,
                "approver_id": decliner_id,
                "updated_at": now,
            },
        )
        await self._emit(
            ConsentEvent.for_proposal(
                updated,
                action="declined",
                performed_by=decliner_id,
                performed_at=now,
                recipient_ids=[updated.proposer_id],
                reason=reason,
            ),
        )
        return updated

    async def cancel(
        self,
        proposal_id: UUID,
        canceller_id: str,
        *,
        family_id: str | None = None,
    ) -> ConsentProposal:
        """Cancel a change that is still inside its cooling period."""
        proposal = await self._load(proposal_id, family_id)
        guardians = await self._require_guardian(proposal.family_id, canceller_id)
        if proposal.status != COOLING_PERIOD:
            raise InvalidStateError(status=proposal.status)
        now = self.clock.now()
        if proposal.effective_at is not None and now > proposal.effective_at:
            raise CoolingPeriodEndedError(effective_at=proposal.effective_at)

        parties = {proposal.proposer_id}
        if proposal.approver_id:
            parties.add(proposal.approver_id)
        parties.update(str(ack["guardian_id"]) for ack in proposal.acknowledgments or [])
        if canceller_id not in parties:
            raise UnauthorizedActorError("Only a party to this change can cancel it.")

        updated = await self._transition(
            proposal,
            expected={COOLING_PERIOD},
            changes={
                "status": CANCELLED,
                "cancelled_by_uid": canceller_id,
                "resolved_at": now,
                "effective_at": None,
                "updated_at": now,
            },
        )
        await self._emit(
            ConsentEvent.for_proposal(
                updated,
                action="cancelled",
                performed_by=canceller_id,
                performed_at=now,
                recipient_ids=[g.uid for g in guardians],
                cancelled_effective_at=proposal.effective_at,
            ),
        )
        return updated

    async def acknowledge(
        self,
        proposal_id: UUID,
        guardian_id: str,
        *,
        family_id: str | None = None,
    ) -> ConsentProposal:
        """Record one guardian's acknowledgment of a multi-guardian dissolution."""
        proposal = await self._load(proposal_id, family_id)
        if guardian_id == proposal.proposer_id:
            raise UnauthorizedActorError("The initiator does not acknowledge their own request.")
        guardians = await self._require_guardian(proposal.family_id, guardian_id)
        if proposal.status != PENDING_ACKNOWLEDGMENT:
            raise InvalidStateError(status=proposal.status)
        acknowledgments = list(proposal.acknowledgments or [])
        if any(ack.get("guardian_id") == guardian_id for ack in acknowledgments):
            raise AlreadyAcknowledgedError()

        now = self.clock.now()
        acknowledgments.append({"guardian_id": guardian_id, "acknowledged_at": now.isoformat()})
        acknowledged = {str(ack["guardian_id"]) for ack in acknowledgments}
        remaining = guardian_ids(guardians) - {proposal.proposer_id} - acknowledged

        changes: dict[str, Any] = {"acknowledgments": acknowledgments, "updated_at": now}
        if not remaining:
            policy = self._policy(proposal.subject_type)
            changes.update(
                status=COOLING_PERIOD,
                resolved_at=now,
                resolved_by=guardian_id,
                approver_id=guardian_id,
                effective_at=now + policy.cooling_period_for(proposal.payload),
            )

        updated = await self._transition(
            proposal,
            expected={PENDING_ACKNOWLEDGMENT},
            changes=changes,
        )
        await self._emit(
            ConsentEvent.for_proposal(
                updated,
                action="acknowledged",
                performed_by=guardian_id,
                performed_at=now,
                recipient_ids=[g.uid for g in guardians],
                remaining=len(remaining),
                effective_at=updated.effective_at,
            ),
        )
        return updated

    # ------------------------------------------------------------------
    # Supplementary flows
    # ------------------------------------------------------------------

    async def withdraw(
        self,
        proposal_id: UUID,
        proposer_id: str,
        *,
        family_id: str | None = None,
    ) -> ConsentProposal:
        proposal = await self._load(proposal_id, family_id)
        if proposer_id != proposal.proposer_id:
            raise UnauthorizedActorError("Only the proposer can withdraw a proposal.")
        if proposal.status == EXPIRED:
            raise ProposalExpiredError(expires_at=proposal.expires_at)
        if proposal.status not in PENDING_STATUSES:
            raise InvalidStateError(status=proposal.status)
        now = self.clock.now()
        self._require_unexpired(proposal, now)

        guardians = await self.guardians.list_guardians(proposal.family_id)
        updated = await self._transition(
            proposal,
            expected=PENDING_STATUSES,
            changes={
                "status": WITHDRAWN,
                "resolved_at": now,
                "resolved_by": proposer_id,
                "updated_at": now,
            },
        )
        await self._emit(
            ConsentEvent.for_proposal(
                updated,
                action="withdrawn",
                performed_by=proposer_id,
                performed_at=now,
                recipient_ids=[g.uid for g in guardians],
            ),
        )
        return updated

    async def modify(
        self,
        proposal_id: UUID,
        modifier_id: str,
        payload: object,
        note: str | None = None,
        *,
        family_id: str | None = None,
    ) -> tuple[ConsentProposal, ConsentProposal]:
        """Answer an agreement change with a counter-proposal.

        Returns ``(original, counter_proposal)``; both are written in one
        store transaction.
        """
        proposal = await self._load(proposal_id, family_id)
        if proposal.subject_type != AGREEMENT_CHANGE:
            raise ConsentValidationError("Only agreement changes can be modified.")
        if modifier_id == proposal.proposer_id:
            raise UnauthorizedActorError("You cannot modify your own proposal.")
        guardians = await self._require_guardian(proposal.family_id, modifier_id)
        note = validate_reason(note, field_name="note")
        now = self.clock.now()
        self._require_pending_approval(proposal, now)

        counter = await self._build_proposal(
            family_id=proposal.family_id,
            subject_type=proposal.subject_type,
            subject_key=proposal.subject_key,
            proposer_id=modifier_id,
            payload=payload,
            guardians=guardians,
            now=now,
            supersedes_proposal_id=proposal.id,
        )
        try:
            original, counter = await self.store.transition_and_insert(
                proposal.id,
                expected_statuses={PENDING_APPROVAL},
                expected_version=proposal.version,
                changes={
                    "status": MODIFIED,
                    "superseded_by_id": counter.id,
                    "modification_note": note,
                    "resolved_at": now,
                    "resolved_by": modifier_id,
                    "updated_at": now,
                },
                new_proposal=counter,
            )
        except StaleProposalError as exc:
            raise InvalidStateError(proposal_id=proposal.id) from exc

        await self._emit(
            ConsentEvent.for_proposal(
                original,
                action="modified",
                performed_by=modifier_id,
                performed_at=now,
                recipient_ids=[original.proposer_id],
                superseded_by_id=counter.id,
                note=note,
            ),
        )
        await self._emit(
            ConsentEvent.for_proposal(
                counter,
                action="proposed",
                performed_by=modifier_id,
                performed_at=now,
                recipient_ids=[original.proposer_id],
                supersedes_proposal_id=original.id,
                expires_at=counter.expires_at,
            ),
        )
        return original, counter

    async def dispute(
        self,
        proposal_id: UUID,
        guardian_id: str,
        reason: str | None = None,
        *,
        family_id: str | None = None,
    ) -> tuple[ConsentProposal, ConsentProposal]:
        """Contest an approved emergency increase inside its review window.

        The original keeps its status; a reversal proposal carrying the swapped
        values goes back through approval and, being a reduction, a cooling period.
        """
        proposal = await self._load(proposal_id, family_id)
        if guardian_id == proposal.proposer_id:
            raise UnauthorizedActorError("You cannot dispute your own proposal.")
        guardians = await self._require_guardian(proposal.family_id, guardian_id)
        if (
            proposal.status != APPROVED
            or not proposal.is_emergency_increase
            or proposal.disputed_by is not None
        ):
            raise InvalidStateError(status=proposal.status)
        reason = validate_reason(reason, field_name="reason")
        now = self.clock.now()
        if proposal.review_expires_at is not None and now > proposal.review_expires_at:
            raise ProposalExpiredError(review_expires_at=proposal.review_expires_at)

        reversed_payload = dict(proposal.payload)
        reversed_payload["current_value"] = proposal.payload.get("proposed_value")
        reversed_payload["proposed_value"] = proposal.payload.get("current_value")
        reversal = await self._build_proposal(
            family_id=proposal.family_id,
            subject_type=proposal.subject_type,
            subject_key=proposal.subject_key,
            proposer_id=guardian_id,
            payload=reversed_payload,
            guardians=guardians,
            now=now,
            skip_cooldown=True,
            reverses_proposal_id=proposal.id,
        )
        try:
            original, reversal = await self.store.transition_and_insert(
                proposal.id,
                expected_statuses={APPROVED},
                expected_version=proposal.version,
                changes={
                    "disputed_by": guardian_id,
                    "disputed_at": now,
                    "dispute_reason": reason,
                    "updated_at": now,
                },
                new_proposal=reversal,
            )
        except StaleProposalError as exc:
            raise InvalidStateError(proposal_id=proposal.id) from exc

        await self._emit(
            ConsentEvent.for_proposal(
                original,
                action="disputed",
                performed_by=guardian_id,
                performed_at=now,
                recipient_ids=[original.proposer_id],
                reversal_proposal_id=reversal.id,
                reason=reason,
            ),
        )
        return original, reversal

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def get_pending(
        self,
        family_id: str,
        *,
        viewer_id: str | None = None,
    ) -> list[ConsentProposal]:
        if viewer_id is not None:
            await self._require_guardian(family_id, viewer_id)
        return await self.store.list_pending(family_id, now=self.clock.now())

    async def get_status(
        self,
        proposal_id: UUID,
        *,
        family_id: str | None = None,
        viewer_id: str | None = None,
    ) -> ConsentProposal:
        proposal = await self._load(proposal_id, family_id)
        if viewer_id is not None:
            await self._require_guardian(proposal.family_id, viewer_id)
        return proposal

    async def get_cooldown(
        self,
        family_id: str,
        subject_key: str,
        proposer_id: str,
        *,
        viewer_id: str | None = None,
    ) -> CooldownStatus:
        if viewer_id is not None:
            await self._require_guardian(family_id, viewer_id)
        return await self.cooldown.is_blocked(family_id, subject_key, proposer_id)

    def is_in_effect(self, proposal: ConsentProposal) -> bool:
        return is_in_effect(proposal, self.clock.now())
