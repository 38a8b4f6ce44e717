# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic defaults for import-time settings initialization, regardless of shell env.
os.environ["LOCAL_AUTH_TOKEN"] = "test-local-token-0123456789-0123456789-0123456789x"
os.environ["ENVIRONMENT"] = "test"
os.environ["DB_AUTO_MIGRATE"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./consent-test.db"

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402

from app import models as _models  # noqa: E402,F401
from app.core.config import settings  # noqa: E402
from app.models.family_guardians import FamilyGuardian  # noqa: E402
from app.services.consent.engine import ConsentEngine  # noqa: E402
from app.services.consent.events import ConsentEvent  # noqa: E402
from app.services.consent.expiry_scanner import ExpiryScanner  # noqa: E402
from app.services.consent.policies import build_policies  # noqa: E402
from app.services.consent.store import SqlProposalStore  # noqa: E402
from app.services.guardians import SqlGuardianDirectory  # noqa: E402

FAMILY_ID = "family-1"
START = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Manually advanced clock for deadline tests."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[ConsentEvent] = []

    async def publish(self, event: ConsentEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def session_maker(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'consent.db'}")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def seed_guardians(session_maker):
    async def _seed(*guardian_ids: str, family_id: str = FAMILY_ID) -> None:
        async with session_maker() as session:
            for guardian_id in guardian_ids:
                session.add(FamilyGuardian(family_id=family_id, guardian_id=guardian_id))
            await session.commit()

    return _seed


@pytest.fixture
def store(session_maker) -> SqlProposalStore:
    return SqlProposalStore(session_maker)


@pytest.fixture
def engine(session_maker, store, clock, publisher) -> ConsentEngine:
    return ConsentEngine(
        store=store,
        guardians=SqlGuardianDirectory(session_maker),
        publisher=publisher,
        clock=clock,
        policies=build_policies(settings),
        rate_limit=10,
    )


@pytest.fixture
def scanner(session_maker, store, clock, publisher) -> ExpiryScanner:
    return ExpiryScanner(
        store=store,
        guardians=SqlGuardianDirectory(session_maker),
        publisher=publisher,
        clock=clock,
    )
