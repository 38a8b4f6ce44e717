"""Error taxonomy for the consent workflow.

Every error here is an expected, recoverable outcome that callers render to the
user. Each carries a machine-readable ``kind`` plus a stable, generic message, and
the timestamps a client needs for countdowns. Store and driver failures are *not*
part of this taxonomy; they propagate unchanged as infrastructure errors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID


class ConsentError(Exception):
    """Base class for consent-domain failures."""

    kind: str = "consent_error"
    message: str = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or type(self).message
        self.context: dict[str, Any] = context
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.kind, "message": self.message}
        for key, value in self.context.items():
            if value is None:
                continue
            detail[key] = value.isoformat() if hasattr(value, "isoformat") else str(value)
        return detail


class ProposalNotFoundError(ConsentError):
    kind = "not_found"
    message = "Could not find the proposal."


class UnauthorizedActorError(ConsentError):
    kind = "unauthorized"
    message = "You are not allowed to do this."


class InvalidStateError(ConsentError):
    kind = "invalid_state"
    message = "Someone already responded to this proposal."


class AlreadyAcknowledgedError(InvalidStateError):
    kind = "already_acknowledged"
    message = "You have already acknowledged this."


class ProposalExpiredError(ConsentError):
    kind = "expired"
    message = "This proposal has expired. You can create a new one."


class CoolingPeriodEndedError(ProposalExpiredError):
    kind = "cooling_period_ended"
    message = "The waiting period has ended and the change is now in effect."


class CooldownActiveError(ConsentError):
    """Re-proposal blocked by a recent decline on the same subject."""

    kind = "cooldown_active"
    message = "This change was recently declined. Please wait before proposing it again."

    def __init__(self, *, cooldown_ends_at: datetime, declined_proposal_id: UUID) -> None:
        super().__init__(
            cooldown_ends_at=cooldown_ends_at,
            declined_proposal_id=declined_proposal_id,
        )
        self.cooldown_ends_at = cooldown_ends_at
        self.declined_proposal_id = declined_proposal_id


class RateLimitedError(ConsentError):
    kind = "rate_limited"
    message = "You have made too many proposals. Please wait an hour."

    def __init__(self, *, retry_after: datetime) -> None:
        super().__init__(retry_after=retry_after)
        self.retry_after = retry_after


class ConsentValidationError(ConsentError):
    kind = "validation_error"
    message = "The proposed change is not valid."


class StaleProposalError(Exception):
    """Raised by a store when a conditional write loses to a concurrent writer."""

    def __init__(self, proposal_id: UUID) -> None:
        super().__init__(f"Proposal {proposal_id} changed concurrently")
        self.proposal_id = proposal_id


class ActiveProposalConflictError(Exception):
    """Raised by a store when an insert collides with an already active proposal."""

    def __init__(self, family_id: str, subject_type: str) -> None:
        super().__init__(f"Family {family_id} already has an active {subject_type} proposal")
        self.family_id = family_id
        self.subject_type = subject_type
