"""Queue task that runs the expiry scanner inside the background worker."""

from __future__ import annotations

from datetime import UTC, datetime

from app.core.config import settings
from app.core.logging import get_logger
from app.services.queue import QueuedTask, enqueue_task
from app.services.queue import requeue_if_failed as generic_requeue_if_failed

logger = get_logger(__name__)
TASK_TYPE = "consent_expiry_scan"


def enqueue_expiry_scan() -> bool:
    """Push one scan request onto the consent task queue."""
    return enqueue_task(
        QueuedTask(task_type=TASK_TYPE, payload={}, created_at=datetime.now(UTC)),
        settings.rq_queue_name,
        redis_url=settings.rq_redis_url,
    )


async def process_expiry_scan_task(task: QueuedTask) -> None:
    from app.services.consent.factory import build_expiry_scanner

    result = await build_expiry_scanner().run_once()
    logger.info(
        "consent.expiry_scan.task_complete",
        extra={
            "attempt": task.attempts,
            "expired": result.expired,
            "completed": result.completed,
        },
    )


def requeue_expiry_scan_task(task: QueuedTask, *, delay_seconds: float = 0) -> bool:
    return generic_requeue_if_failed(
        task,
        settings.rq_queue_name,
        max_retries=settings.rq_dispatch_max_retries,
        redis_url=settings.rq_redis_url,
        delay_seconds=delay_seconds,
    )
