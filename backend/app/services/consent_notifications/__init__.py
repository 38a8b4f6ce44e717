"""Consent notification queueing + dispatch utilities."""

from app.services.consent_notifications.queue import (
    TASK_TYPE,
    ConsentNotification,
    decode_notification_task,
    enqueue_notification,
)

__all__ = [
    "TASK_TYPE",
    "ConsentNotification",
    "decode_notification_task",
    "enqueue_notification",
]
