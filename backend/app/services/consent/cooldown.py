"""Re-proposal block after a decline on the same subject."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from app.core.time import Clock
    from app.services.consent.policies import SubjectPolicy
    from app.services.consent.store import ProposalStore


@dataclass(frozen=True)
class CooldownStatus:
    blocked: bool
    cooldown_ends_at: datetime | None = None
    declined_proposal_id: UUID | None = None


NOT_BLOCKED = CooldownStatus(blocked=False)


class CooldownGuard:
    """Derives the cooldown from the most recent matching decline; nothing is stored."""

    def __init__(
        self,
        store: ProposalStore,
        clock: Clock,
        policies: dict[str, SubjectPolicy],
    ) -> None:
        self._store = store
        self._clock = clock
        self._policies = policies

    async def is_blocked(
        self,
        family_id: str,
        subject_key: str,
        proposer_id: str,
    ) -> CooldownStatus:
        declined = await self._store.latest_declined(family_id, subject_key, proposer_id)
        if declined is None or declined.resolved_at is None:
            return NOT_BLOCKED
        policy = self._policies.get(declined.subject_type)
        if policy is None:
            return NOT_BLOCKED
        ends_at = declined.resolved_at + policy.decline_cooldown
        if self._clock.now() >= ends_at:
            return NOT_BLOCKED
        return CooldownStatus(
            blocked=True,
            cooldown_ends_at=ends_at,
            declined_proposal_id=declined.id,
        )
