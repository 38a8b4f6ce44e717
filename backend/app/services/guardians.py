"""Read-only guardian membership lookups for consent authorization."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from sqlmodel import col

from app.models.family_guardians import FamilyGuardian

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession


@dataclass(frozen=True)
class GuardianRecord:
    """A guardian as seen by the consent workflow."""

    uid: str
    role: str = "guardian"
    permissions: list[str] = field(default_factory=list)


class GuardianDirectory(Protocol):
    async def list_guardians(self, family_id: str) -> list[GuardianRecord]: ...


class SqlGuardianDirectory:
    """Guardian lookups backed by the ``family_guardians`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def list_guardians(self, family_id: str) -> list[GuardianRecord]:
        async with self._session_maker() as session:
            rows = await (
                FamilyGuardian.objects.filter_by(family_id=family_id)
                .order_by(col(FamilyGuardian.created_at).asc())
                .all(session)
            )
        return [
            GuardianRecord(uid=row.guardian_id, role=row.role, permissions=list(row.permissions))
            for row in rows
        ]


def guardian_ids(guardians: list[GuardianRecord]) -> set[str]:
    return {guardian.uid for guardian in guardians}
