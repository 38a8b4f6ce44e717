"""Post-commit outbox for consent transitions.

Events are built from the committed proposal and handed to a publisher after the
store transaction succeeds. Audit and notification delivery fail independently
and never undo the transition that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from app.core.logging import get_logger
from app.services.audit import record_audit
from app.services.consent_notifications.queue import ConsentNotification, enqueue_notification

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from app.models.consent_proposals import ConsentProposal

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConsentEvent:
    """One transition, ready for the audit trail and the other parties."""

    action: str
    family_id: str
    proposal_id: UUID
    subject_type: str
    subject_key: str
    status: str
    performed_by: str
    performed_at: datetime
    recipient_ids: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def audit_action(self) -> str:
        return f"consent.{self.action}"

    @property
    def notification_kind(self) -> str:
        return f"{self.subject_type}.{self.action}"

    @classmethod
    def for_proposal(
        cls,
        proposal: ConsentProposal,
        *,
        action: str,
        performed_by: str,
        performed_at: datetime,
        recipient_ids: Sequence[str] = (),
        **metadata: Any,
    ) -> ConsentEvent:
        return cls(
            action=action,
            family_id=proposal.family_id,
            proposal_id=proposal.id,
            subject_type=proposal.subject_type,
            subject_key=proposal.subject_key,
            status=proposal.status,
            performed_by=performed_by,
            performed_at=performed_at,
            recipient_ids=tuple(rid for rid in recipient_ids if rid != performed_by),
            metadata={key: value for key, value in metadata.items() if value is not None},
        )


class EventPublisher(Protocol):
    async def publish(self, event: ConsentEvent) -> None: ...


def _jsonable_value(value: object) -> object:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, str | int | float | bool | list | dict):
        return value
    return str(value)


def _jsonable(metadata: dict[str, Any]) -> dict[str, object]:
    return {key: _jsonable_value(value) for key, value in metadata.items()}


class OutboxPublisher:
    """Writes the audit entry, then enqueues the notification; each is best-effort."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        notify: Callable[[ConsentNotification], bool] = enqueue_notification,
    ) -> None:
        self._session_maker = session_maker
        self._notify = notify

    async def publish(self, event: ConsentEvent) -> None:
        await self._record(event)
        self._send(event)

    async def _record(self, event: ConsentEvent) -> None:
        try:
            async with self._session_maker() as session:
                await record_audit(
                    session,
                    family_id=event.family_id,
                    action=event.audit_action,
                    performed_by=event.performed_by,
                    entity_type=event.subject_type,
                    entity_id=event.proposal_id,
                    performed_at=event.performed_at,
                    details={
                        "subject_key": event.subject_key,
                        "status": event.status,
                        **_jsonable(event.metadata),
                    },
                )
        except Exception:
            logger.warning(
                "consent.audit.record_failed",
                exc_info=True,
                extra={"action": event.audit_action, "proposal_id": str(event.proposal_id)},
            )

    def _send(self, event: ConsentEvent) -> None:
        if not event.recipient_ids:
            return
        try:
            sent = self._notify(
                ConsentNotification(
                    kind=event.notification_kind,
                    family_id=event.family_id,
                    proposal_id=event.proposal_id,
                    subject_key=event.subject_key,
                    recipient_ids=list(event.recipient_ids),
                    payload={"status": event.status, **_jsonable(event.metadata)},
                ),
            )
        except Exception:
            logger.warning(
                "consent.notification.publish_failed",
                exc_info=True,
                extra={"kind": event.notification_kind, "proposal_id": str(event.proposal_id)},
            )
            return
        if not sent:
            logger.warning(
                "consent.notification.not_enqueued",
                extra={"kind": event.notification_kind, "proposal_id": str(event.proposal_id)},
            )
