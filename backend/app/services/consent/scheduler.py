"""Expiry scan scheduler bootstrap for rq-scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from redis import Redis
from rq_scheduler import Scheduler  # type: ignore[import-untyped]

from app.core.config import settings
from app.core.logging import get_logger
from app.services.consent import tasks

logger = get_logger(__name__)


def bootstrap_expiry_scan_schedule(interval_seconds: int | None = None) -> None:
    """Register the recurring scan job, replacing any earlier registration."""
    connection = Redis.from_url(settings.rq_redis_url)
    scheduler = Scheduler(queue_name=settings.rq_queue_name, connection=connection)

    for job in scheduler.get_jobs():
        if job.id == settings.expiry_scan_schedule_id:
            scheduler.cancel(job)

    effective_interval_seconds = (
        settings.expiry_scan_interval_seconds if interval_seconds is None else interval_seconds
    )

    scheduler.schedule(
        datetime.now(tz=timezone.utc) + timedelta(seconds=5),
        func=tasks.enqueue_expiry_scan,
        interval=effective_interval_seconds,
        repeat=None,
        id=settings.expiry_scan_schedule_id,
        queue_name=settings.rq_queue_name,
    )
    logger.info(
        "consent.expiry_scan.scheduled",
        extra={
            "schedule_id": settings.expiry_scan_schedule_id,
            "interval_seconds": effective_interval_seconds,
        },
    )
