"""Consent notification dispatch handler.

A queued notification fans out into one message per recipient guardian. Channel
delivery (push, email) reads the ``consent.notification.delivered`` records;
``dissolution.completed`` additionally hands the family to the deletion pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.core.logging import get_logger
from app.services.consent.policies import AGREEMENT_CHANGE, DISSOLUTION, SAFETY_SETTING
from app.services.consent_notifications.queue import (
    ConsentNotification,
    decode_notification_task,
    requeue_if_failed,
)
from app.services.queue import QueuedTask

logger = get_logger(__name__)

HIGH_PRIORITY = "high"
NORMAL_PRIORITY = "normal"

_SUBJECT_LABELS = {
    SAFETY_SETTING: "safety setting",
    AGREEMENT_CHANGE: "family agreement",
    DISSOLUTION: "family dissolution",
}

_TITLES = {
    "proposed": "New {label} request",
    "approved": "Your {label} request was approved",
    "declined": "Your {label} request was declined",
    "cancelled": "A pending {label} change was cancelled",
    "acknowledged": "A guardian acknowledged the {label}",
    "withdrawn": "A {label} request was withdrawn",
    "modified": "Your {label} request was changed",
    "disputed": "Your {label} change was disputed",
    "expired": "A {label} request expired",
    "completed": "The {label} is complete",
}


@dataclass(frozen=True)
class GuardianMessage:
    """Rendered message for one recipient."""

    recipient_id: str
    title: str
    body: str
    priority: str


def _split_kind(kind: str) -> tuple[str, str]:
    subject_type, _, action = kind.rpartition(".")
    return subject_type, action


def _body(action: str, subject_key: str, payload: dict[str, object]) -> str:
    parts = [f"Setting: {subject_key}." if subject_key else ""]
    if action == "proposed" and payload.get("expires_at"):
        parts.append(f"Please respond before {payload['expires_at']}.")
    if action == "declined" and payload.get("reason"):
        parts.append(f"Reason: {payload['reason']}.")
    if action == "disputed" and payload.get("reason"):
        parts.append(f"Reason: {payload['reason']}.")
    if payload.get("status") == "cooling_period" and payload.get("effective_at"):
        parts.append(
            f"It takes effect at {payload['effective_at']} unless a guardian cancels it.",
        )
    return " ".join(part for part in parts if part)


def _priority(subject_type: str, action: str, payload: dict[str, object]) -> str:
    if subject_type == DISSOLUTION or action == "disputed":
        return HIGH_PRIORITY
    if action == "proposed" and payload.get("is_emergency_increase"):
        return HIGH_PRIORITY
    return NORMAL_PRIORITY


def render_messages(notification: ConsentNotification) -> list[GuardianMessage]:
    """Build the per-recipient messages for ``notification``."""
    subject_type, action = _split_kind(notification.kind)
    label = _SUBJECT_LABELS.get(subject_type, "consent")
    title = _TITLES.get(action, "A {label} request changed").format(label=label)
    body = _body(action, notification.subject_key, notification.payload)
    priority = _priority(subject_type, action, notification.payload)
    return [
        GuardianMessage(recipient_id=rid, title=title, body=body, priority=priority)
        for rid in dict.fromkeys(notification.recipient_ids)
    ]


def _dispatch(notification: ConsentNotification) -> list[GuardianMessage]:
    messages = render_messages(notification)
    for message in messages:
        logger.info(
            "consent.notification.delivered",
            extra={
                "kind": notification.kind,
                "family_id": notification.family_id,
                "proposal_id": str(notification.proposal_id),
                "recipient_id": message.recipient_id,
                "priority": message.priority,
                "title": message.title,
            },
        )
    if notification.kind == f"{DISSOLUTION}.completed":
        logger.info(
            "consent.dissolution.deletion_requested",
            extra={
                "family_id": notification.family_id,
                "proposal_id": str(notification.proposal_id),
            },
        )
    return messages


async def process_notification_task(task: QueuedTask) -> None:
    """Decode and dispatch a consent notification task."""
    notification = decode_notification_task(task)
    _dispatch(notification)


def requeue_notification_task(task: QueuedTask, *, delay_seconds: float = 0) -> bool:
    """Requeue a failed notification task."""
    notification = decode_notification_task(task)
    return requeue_if_failed(notification, delay_seconds=delay_seconds)
