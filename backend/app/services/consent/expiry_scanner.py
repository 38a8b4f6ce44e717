"""Periodic sweep that expires unanswered proposals and completes elapsed dissolutions.

Both passes use the store's conditional update, so overlapping scans (or a scan
racing a guardian's response) resolve each proposal at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.core.logging import get_logger
from app.core.time import system_clock
from app.services.consent.errors import StaleProposalError
from app.services.consent.events import ConsentEvent
from app.services.consent.policies import (
    COMPLETED,
    COOLING_PERIOD,
    EXPIRED,
    PENDING_STATUSES,
    SYSTEM_ACTOR_ID,
)

if TYPE_CHECKING:
    from app.core.time import Clock
    from app.models.consent_proposals import ConsentProposal
    from app.services.consent.events import EventPublisher
    from app.services.consent.store import ProposalStore
    from app.services.guardians import GuardianDirectory

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScanResult:
    expired: int = 0
    completed: int = 0
    skipped: int = 0


class ExpiryScanner:
    """Moves timed-out proposals to ``expired`` and finished dissolutions to ``completed``."""

    def __init__(
        self,
        *,
        store: ProposalStore,
        guardians: GuardianDirectory,
        publisher: EventPublisher,
        clock: Clock = system_clock,
        batch_size: int = 200,
    ) -> None:
        self.store = store
        self.guardians = guardians
        self.publisher = publisher
        self.clock = clock
        self.batch_size = batch_size

    async def _publish(self, event: ConsentEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.warning(
                "consent.expiry_scan.publish_failed",
                exc_info=True,
                extra={"action": event.action, "proposal_id": str(event.proposal_id)},
            )

    async def expire_due(self) -> tuple[int, int]:
        """Expire pending proposals past ``expires_at``; returns ``(expired, skipped)``."""
        now = self.clock.now()
        expired = skipped = 0
        for proposal in await self.store.list_due_for_expiry(now=now, limit=self.batch_size):
            try:
                updated = await self.store.transition(
                    proposal.id,
                    expected_statuses=PENDING_STATUSES,
                    expected_version=proposal.version,
                    changes={
                        "status": EXPIRED,
                        "resolved_at": now,
                        "resolved_by": SYSTEM_ACTOR_ID,
                        "updated_at": now,
                    },
                )
            except StaleProposalError:
                skipped += 1
                continue
            expired += 1
            await self._publish(
                ConsentEvent.for_proposal(
                    updated,
                    action="expired",
                    performed_by=SYSTEM_ACTOR_ID,
                    performed_at=now,
                    recipient_ids=[updated.proposer_id],
                    expires_at=proposal.expires_at,
                ),
            )
        return expired, skipped

    async def complete_elapsed(self) -> tuple[int, int]:
        """Mark dissolutions whose cooling period has elapsed as ``completed``."""
        now = self.clock.now()
        completed = skipped = 0
        for proposal in await self.store.list_due_for_completion(now=now, limit=self.batch_size):
            try:
                updated = await self.store.transition(
                    proposal.id,
                    expected_statuses={COOLING_PERIOD},
                    expected_version=proposal.version,
                    changes={
                        "status": COMPLETED,
                        "completed_at": now,
                        "effective_at": None,
                        "updated_at": now,
                    },
                )
            except StaleProposalError:
                skipped += 1
                continue
            completed += 1
            guardians = await self._recipients(updated)
            await self._publish(
                ConsentEvent.for_proposal(
                    updated,
                    action="completed",
                    performed_by=SYSTEM_ACTOR_ID,
                    performed_at=now,
                    recipient_ids=guardians,
                    effective_at=proposal.effective_at,
                    data_handling_option=updated.payload.get("data_handling_option"),
                ),
            )
        return completed, skipped

    async def _recipients(self, proposal: ConsentProposal) -> list[str]:
        try:
            guardians = await self.guardians.list_guardians(proposal.family_id)
        except Exception:
            logger.warning(
                "consent.expiry_scan.guardian_lookup_failed",
                exc_info=True,
                extra={"family_id": proposal.family_id},
            )
            return [proposal.proposer_id]
        return [guardian.uid for guardian in guardians] or [proposal.proposer_id]

    async def run_once(self) -> ScanResult:
        expired, expire_skipped = await self.expire_due()
        completed, complete_skipped = await self.complete_elapsed()
        result = ScanResult(
            expired=expired,
            completed=completed,
            skipped=expire_skipped + complete_skipped,
        )
        logger.info(
            "consent.expiry_scan.complete",
            extra={
                "expired": result.expired,
                "completed": result.completed,
                "skipped": result.skipped,
            },
        )
        return result
