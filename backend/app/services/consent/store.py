"""Transactional persistence for consent proposals.

Every state change is a conditional ``UPDATE`` guarded by the expected status set
and the row's ``version``. A writer that loses a race affects zero rows and gets
``StaleProposalError`` instead of overwriting the winner's outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, or_, select

from app.core.logging import get_logger
from app.models.consent_proposals import ConsentProposal
from app.services.consent.errors import ActiveProposalConflictError, StaleProposalError
from app.services.consent.policies import (
    COOLING_PERIOD,
    DECLINED,
    DISSOLUTION,
    PENDING_STATUSES,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)


class ProposalStore(Protocol):
    """Storage contract the consent engine depends on."""

    async def insert(self, proposal: ConsentProposal) -> ConsentProposal: ...

    async def get(self, proposal_id: UUID) -> ConsentProposal | None: ...

    async def transition(
        self,
        proposal_id: UUID,
        *,
        expected_statuses: Collection[str],
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> ConsentProposal: ...

    async def transition_and_insert(
        self,
        proposal_id: UUID,
        *,
        expected_statuses: Collection[str],
        expected_version: int,
        changes: Mapping[str, Any],
        new_proposal: ConsentProposal,
    ) -> tuple[ConsentProposal, ConsentProposal]: ...

    async def list_pending(self, family_id: str, *, now: datetime) -> list[ConsentProposal]: ...

    async def latest_declined(
        self,
        family_id: str,
        subject_key: str,
        proposer_id: str,
    ) -> ConsentProposal | None: ...

    async def recent_proposal_times(
        self,
        family_id: str,
        proposer_id: str,
        *,
        since: datetime,
    ) -> list[datetime]: ...

    async def find_active(
        self,
        family_id: str,
        subject_type: str,
        *,
        statuses: Collection[str],
    ) -> ConsentProposal | None: ...

    async def list_due_for_expiry(self, *, now: datetime, limit: int) -> list[ConsentProposal]: ...

    async def list_due_for_completion(
        self,
        *,
        now: datetime,
        limit: int,
    ) -> list[ConsentProposal]: ...


class SqlProposalStore:
    """``ProposalStore`` backed by the ``consent_proposals`` table.

    Each call opens a short-lived session so the store can be shared freely
    across requests, workers and scanner runs.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def insert(self, proposal: ConsentProposal) -> ConsentProposal:
        """Insert a new proposal.

        The partial unique index on active dissolutions makes the one-per-family
        rule hold even when two guardians start a dissolution at the same moment.
        """
        async with self._session_maker() as session:
            session.add(proposal)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.info(
                    "consent.store.active_conflict",
                    extra={
                        "family_id": proposal.family_id,
                        "subject_type": proposal.subject_type,
                    },
                )
                raise ActiveProposalConflictError(
                    proposal.family_id,
                    proposal.subject_type,
                ) from exc
            await session.refresh(proposal)
            return proposal

    async def get(self, proposal_id: UUID) -> ConsentProposal | None:
        async with self._session_maker() as session:
            return await ConsentProposal.objects.by_id(proposal_id).first(session)

    async def _apply(
        self,
        session: AsyncSession,
        proposal_id: UUID,
        *,
        expected_statuses: Collection[str],
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> None:
        statement = (
            update(ConsentProposal)
            .where(
                col(ConsentProposal.id) == proposal_id,
                col(ConsentProposal.status).in_(list(expected_statuses)),
                col(ConsentProposal.version) == expected_version,
            )
            .values(**changes, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await session.exec(statement)  # type: ignore[call-overload]
        if result.rowcount != 1:
            await session.rollback()
            logger.info(
                "consent.store.stale_write",
                extra={
                    "proposal_id": str(proposal_id),
                    "expected_statuses": sorted(expected_statuses),
                    "expected_version": expected_version,
                },
            )
            raise StaleProposalError(proposal_id)

    async def transition(
        self,
        proposal_id: UUID,
        *,
        expected_statuses: Collection[str],
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> ConsentProposal:
        """Apply ``changes`` only if the row still matches the caller's snapshot."""
        async with self._session_maker() as session:
            await self._apply(
                session,
                proposal_id,
                expected_statuses=expected_statuses,
                expected_version=expected_version,
                changes=changes,
            )
            await session.commit()
            updated = await ConsentProposal.objects.by_id(proposal_id).first(session)
            if updated is None:
                raise StaleProposalError(proposal_id)
            return updated

    async def transition_and_insert(
        self,
        proposal_id: UUID,
        *,
        expected_statuses: Collection[str],
        expected_version: int,
        changes: Mapping[str, Any],
        new_proposal: ConsentProposal,
    ) -> tuple[ConsentProposal, ConsentProposal]:
        """Conditionally update one proposal and insert its successor atomically."""
        async with self._session_maker() as session:
            await self._apply(
                session,
                proposal_id,
                expected_statuses=expected_statuses,
                expected_version=expected_version,
                changes=changes,
            )
            session.add(new_proposal)
            await session.commit()
            await session.refresh(new_proposal)
            updated = await ConsentProposal.objects.by_id(proposal_id).first(session)
            if updated is None:
                raise StaleProposalError(proposal_id)
            return updated, new_proposal

    async def list_pending(self, family_id: str, *, now: datetime) -> list[ConsentProposal]:
        async with self._session_maker() as session:
            return await (
                ConsentProposal.objects.filter_by(family_id=family_id)
                .filter(
                    col(ConsentProposal.status).in_(list(PENDING_STATUSES)),
                    or_(
                        col(ConsentProposal.expires_at).is_(None),
                        col(ConsentProposal.expires_at) >= now,
                    ),
                )
                .order_by(col(ConsentProposal.created_at).asc())
                .all(session)
            )

    async def latest_declined(
        self,
        family_id: str,
        subject_key: str,
        proposer_id: str,
    ) -> ConsentProposal | None:
        async with self._session_maker() as session:
            return await (
                ConsentProposal.objects.filter_by(
                    family_id=family_id,
                    subject_key=subject_key,
                    proposer_id=proposer_id,
                    status=DECLINED,
                )
                .order_by(col(ConsentProposal.resolved_at).desc())
                .first(session)
            )

    async def recent_proposal_times(
        self,
        family_id: str,
        proposer_id: str,
        *,
        since: datetime,
    ) -> list[datetime]:
        async with self._session_maker() as session:
            statement = (
                select(ConsentProposal.created_at)
                .where(
                    col(ConsentProposal.family_id) == family_id,
                    col(ConsentProposal.proposer_id) == proposer_id,
                    col(ConsentProposal.created_at) >= since,
                )
                .order_by(col(ConsentProposal.created_at).asc())
            )
            return list(await session.exec(statement))

    async def find_active(
        self,
        family_id: str,
        subject_type: str,
        *,
        statuses: Collection[str],
    ) -> ConsentProposal | None:
        async with self._session_maker() as session:
            return await (
                ConsentProposal.objects.filter_by(family_id=family_id, subject_type=subject_type)
                .filter(col(ConsentProposal.status).in_(list(statuses)))
                .first(session)
            )

    async def list_due_for_expiry(self, *, now: datetime, limit: int) -> list[ConsentProposal]:
        async with self._session_maker() as session:
            return await (
                ConsentProposal.objects.filter(
                    col(ConsentProposal.status).in_(list(PENDING_STATUSES)),
                    col(ConsentProposal.expires_at).is_not(None),
                    col(ConsentProposal.expires_at) < now,
                )
                .order_by(col(ConsentProposal.expires_at).asc())
                .limit(limit)
                .all(session)
            )

    async def list_due_for_completion(
        self,
        *,
        now: datetime,
        limit: int,
    ) -> list[ConsentProposal]:
        async with self._session_maker() as session:
            return await (
                ConsentProposal.objects.filter_by(
                    subject_type=DISSOLUTION,
                    status=COOLING_PERIOD,
                )
                .filter(col(ConsentProposal.effective_at) <= now)
                .order_by(col(ConsentProposal.effective_at).asc())
                .limit(limit)
                .all(session)
            )

