"""Consent notification queue persistence helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from app.core.config import settings
from app.core.logging import get_logger
from app.services.queue import QueuedTask, enqueue_task
from app.services.queue import requeue_if_failed as generic_requeue_if_failed

logger = get_logger(__name__)
TASK_TYPE = "consent_notification"


@dataclass(frozen=True)
class ConsentNotification:
    """Tells the other parties that a proposal changed state."""

    kind: str  # e.g. safety_setting.proposed | agreement_change.declined | dissolution.completed
    family_id: str
    proposal_id: UUID
    subject_key: str = ""
    recipient_ids: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


def _task_from_notification(notification: ConsentNotification) -> QueuedTask:
    return QueuedTask(
        task_type=TASK_TYPE,
        payload={
            "kind": notification.kind,
            "family_id": notification.family_id,
            "proposal_id": str(notification.proposal_id),
            "subject_key": notification.subject_key,
            "recipient_ids": list(dict.fromkeys(notification.recipient_ids)),
            "payload": notification.payload,
        },
        created_at=notification.created_at,
        attempts=notification.attempts,
    )


def decode_notification_task(task: QueuedTask) -> ConsentNotification:
    """Decode a QueuedTask into a ConsentNotification."""
    if task.task_type != TASK_TYPE:
        raise ValueError(f"Unexpected task_type={task.task_type!r}; expected {TASK_TYPE!r}")

    p: dict[str, Any] = task.payload
    return ConsentNotification(
        kind=str(p["kind"]),
        family_id=str(p["family_id"]),
        proposal_id=UUID(p["proposal_id"]),
        subject_key=str(p.get("subject_key", "")),
        recipient_ids=[str(rid) for rid in p.get("recipient_ids", [])],
        payload=p.get("payload", {}),
        created_at=task.created_at,
        attempts=task.attempts,
    )


def enqueue_notification(notification: ConsentNotification) -> bool:
    """Persist a consent notification in the Redis queue."""
    try:
        queued = _task_from_notification(notification)
        enqueued = enqueue_task(queued, settings.rq_queue_name, redis_url=settings.rq_redis_url)
    except Exception as exc:
        logger.warning(
            "consent.notification.enqueue_failed",
            extra={
                "kind": notification.kind,
                "family_id": notification.family_id,
                "error": str(exc),
            },
        )
        return False
    if enqueued:
        logger.info(
            "consent.notification.enqueued",
            extra={
                "kind": notification.kind,
                "family_id": notification.family_id,
                "proposal_id": str(notification.proposal_id),
                "recipient_count": len(notification.recipient_ids),
            },
        )
    return enqueued


def requeue_if_failed(
    notification: ConsentNotification,
    *,
    delay_seconds: float = 0,
) -> bool:
    """Requeue a failed notification with capped retries."""
    try:
        return generic_requeue_if_failed(
            _task_from_notification(notification),
            settings.rq_queue_name,
            max_retries=settings.rq_dispatch_max_retries,
            redis_url=settings.rq_redis_url,
            delay_seconds=delay_seconds,
        )
    except Exception as exc:
        logger.warning(
            "consent.notification.requeue_failed",
            extra={
                "kind": notification.kind,
                "error": str(exc),
            },
        )
        return False
