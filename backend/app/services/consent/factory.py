"""Wiring for the consent engine and scanner against the application database."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from app.core.config import settings
from app.core.time import system_clock
from app.services.consent.engine import ConsentEngine
from app.services.consent.events import OutboxPublisher
from app.services.consent.expiry_scanner import ExpiryScanner
from app.services.consent.policies import build_policies
from app.services.consent.store import SqlProposalStore
from app.services.guardians import SqlGuardianDirectory

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from app.core.time import Clock


def _default_session_maker() -> async_sessionmaker[AsyncSession]:
    from app.db.session import async_session_maker

    return async_session_maker


def build_engine(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    *,
    clock: Clock = system_clock,
) -> ConsentEngine:
    maker = session_maker or _default_session_maker()
    return ConsentEngine(
        store=SqlProposalStore(maker),
        guardians=SqlGuardianDirectory(maker),
        publisher=OutboxPublisher(maker),
        clock=clock,
        policies=build_policies(settings),
        rate_limit=settings.proposal_rate_limit_per_hour,
        rate_window=timedelta(seconds=settings.proposal_rate_limit_window_seconds),
    )


def build_expiry_scanner(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    *,
    clock: Clock = system_clock,
) -> ExpiryScanner:
    maker = session_maker or _default_session_maker()
    return ExpiryScanner(
        store=SqlProposalStore(maker),
        guardians=SqlGuardianDirectory(maker),
        publisher=OutboxPublisher(maker),
        clock=clock,
        batch_size=settings.expiry_scan_batch_size,
    )
