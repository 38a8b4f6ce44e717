# ruff: noqa: INP001
"""Queue worker registration, retry handling and expiry-scan task tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from app.services import queue_worker
from app.services.consent import factory, scheduler, tasks
from app.services.consent.expiry_scanner import ScanResult
from app.services.consent_notifications.queue import TASK_TYPE as NOTIFICATION_TASK_TYPE
from app.services.queue import QueuedTask


def _task(task_type: str, attempts: int = 0) -> QueuedTask:
    return QueuedTask(task_type=task_type, payload={}, created_at=datetime.now(UTC), attempts=attempts)


def test_worker_registers_consent_handlers() -> None:
    assert NOTIFICATION_TASK_TYPE in queue_worker._TASK_HANDLERS
    assert tasks.TASK_TYPE in queue_worker._TASK_HANDLERS


def test_backoff_grows_and_is_capped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(queue_worker.settings, "rq_dispatch_retry_base_seconds", 2.0)
    monkeypatch.setattr(queue_worker.settings, "rq_dispatch_retry_max_seconds", 10.0)

    assert queue_worker._backoff_seconds(0) == 2.0
    assert queue_worker._backoff_seconds(1) == 4.0
    assert queue_worker._backoff_seconds(5) == 10.0


@pytest.mark.asyncio
async def test_handle_success(monkeypatch: pytest.MonkeyPatch) -> None:
    handled: list[QueuedTask] = []

    async def _handler(task: QueuedTask) -> None:
        handled.append(task)

    monkeypatch.setitem(
        queue_worker._TASK_HANDLERS,
        "test-task",
        queue_worker._TaskHandler(handler=_handler, requeue=lambda task, delay: True),
    )
    task = _task("test-task")

    assert await queue_worker._handle(task) is True
    assert handled == [task]


@pytest.mark.asyncio
async def test_handle_failure_requeues_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    requeued: list[tuple[QueuedTask, float]] = []

    async def _handler(task: QueuedTask) -> None:
        raise RuntimeError("delivery failed")

    def _requeue(task: QueuedTask, delay: float) -> bool:
        requeued.append((task, delay))
        return True

    monkeypatch.setattr(queue_worker, "_compute_jitter", lambda base: 0.0)
    monkeypatch.setitem(
        queue_worker._TASK_HANDLERS,
        "test-task",
        queue_worker._TaskHandler(
            handler=_handler,
            requeue=_requeue,
            attempts_to_delay=lambda attempts: 8.0,
        ),
    )

    assert await queue_worker._handle(_task("test-task", attempts=1)) is False
    assert requeued[0][1] == 8.0


@pytest.mark.asyncio
async def test_unknown_task_type_is_not_handled() -> None:
    assert await queue_worker._handle(_task("unknown")) is False


@pytest.mark.asyncio
async def test_flush_queue_drains_until_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    pending = [_task("test-task"), _task("test-task")]

    def _fake_dequeue(queue_name: str, **kwargs: object) -> QueuedTask | None:
        return pending.pop(0) if pending else None

    async def _handler(task: QueuedTask) -> None:
        return None

    monkeypatch.setattr(queue_worker, "dequeue_task", _fake_dequeue)
    monkeypatch.setattr(queue_worker.settings, "rq_dispatch_throttle_seconds", 0)
    monkeypatch.setitem(
        queue_worker._TASK_HANDLERS,
        "test-task",
        queue_worker._TaskHandler(handler=_handler, requeue=lambda task, delay: True),
    )

    assert await queue_worker.flush_queue() == 2


@pytest.mark.asyncio
async def test_expiry_scan_task_runs_scanner(monkeypatch: pytest.MonkeyPatch) -> None:
    runs: list[int] = []

    class _Scanner:
        async def run_once(self) -> ScanResult:
            runs.append(1)
            return ScanResult(expired=2, completed=1)

    monkeypatch.setattr(factory, "build_expiry_scanner", lambda: _Scanner())

    await tasks.process_expiry_scan_task(_task(tasks.TASK_TYPE))

    assert runs == [1]


def test_enqueue_expiry_scan_uses_consent_queue(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def _fake_enqueue(task: QueuedTask, queue_name: str, *, redis_url: str | None = None) -> bool:
        captured["task"] = task
        captured["queue_name"] = queue_name
        return True

    monkeypatch.setattr(tasks, "enqueue_task", _fake_enqueue)

    assert tasks.enqueue_expiry_scan() is True
    assert captured["task"].task_type == tasks.TASK_TYPE
    assert captured["queue_name"] == tasks.settings.rq_queue_name


def test_bootstrap_schedule_replaces_existing_job(monkeypatch: pytest.MonkeyPatch) -> None:
    class _Job:
        def __init__(self, job_id: str) -> None:
            self.id = job_id

    class _FakeScheduler:
        instances: list[_FakeScheduler] = []

        def __init__(self, *, queue_name: str, connection: object) -> None:
            self.queue_name = queue_name
            self.cancelled: list[str] = []
            self.scheduled: list[dict[str, object]] = []
            _FakeScheduler.instances.append(self)

        def get_jobs(self) -> list[_Job]:
            return [_Job(scheduler.settings.expiry_scan_schedule_id), _Job("other")]

        def cancel(self, job: _Job) -> None:
            self.cancelled.append(job.id)

        def schedule(self, scheduled_time: datetime, **kwargs: object) -> None:
            self.scheduled.append(kwargs)

    monkeypatch.setattr(scheduler, "Scheduler", _FakeScheduler)
    monkeypatch.setattr(scheduler.Redis, "from_url", staticmethod(lambda url: object()))

    scheduler.bootstrap_expiry_scan_schedule(interval_seconds=120)

    fake = _FakeScheduler.instances[-1]
    assert fake.cancelled == [scheduler.settings.expiry_scan_schedule_id]
    assert fake.scheduled[0]["func"] is tasks.enqueue_expiry_scan
    assert fake.scheduled[0]["interval"] == 120
