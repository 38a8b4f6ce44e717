# ruff: noqa: INP001
"""Consent notification queue encoding and dispatch tests."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from app.services.consent_notifications import dispatch
from app.services.consent_notifications.queue import (
    TASK_TYPE,
    ConsentNotification,
    decode_notification_task,
    enqueue_notification,
    requeue_if_failed,
)
from app.services.queue import QueuedTask


def _notification(attempts: int = 0) -> ConsentNotification:
    return ConsentNotification(
        kind="agreement_change.declined",
        family_id="family-1",
        proposal_id=uuid4(),
        recipient_ids=["alice"],
        payload={"status": "declined", "reason": "Not right now"},
        created_at=datetime.now(UTC),
        attempts=attempts,
    )


def test_enqueue_notification_encodes_consent_task(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def _fake_enqueue(task: QueuedTask, queue_name: str, *, redis_url: str | None = None) -> bool:
        captured["task"] = task
        captured["queue_name"] = queue_name
        return True

    monkeypatch.setattr("app.services.consent_notifications.queue.enqueue_task", _fake_enqueue)
    notification = _notification()

    assert enqueue_notification(notification) is True
    task = captured["task"]
    assert isinstance(task, QueuedTask)
    assert task.task_type == TASK_TYPE
    assert task.payload["proposal_id"] == str(notification.proposal_id)
    assert decode_notification_task(task) == notification


def test_enqueue_notification_reports_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*args: object, **kwargs: object) -> bool:
        raise RuntimeError("serialization failed")

    monkeypatch.setattr("app.services.consent_notifications.queue.enqueue_task", _boom)

    assert enqueue_notification(_notification()) is False


def test_decode_rejects_other_task_types() -> None:
    task = QueuedTask(task_type="consent_expiry_scan", payload={}, created_at=datetime.now(UTC))

    with pytest.raises(ValueError, match="Unexpected task_type"):
        decode_notification_task(task)


def test_requeue_bumps_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[QueuedTask] = []

    def _fake_enqueue(task: QueuedTask, queue_name: str, **kwargs: object) -> bool:
        captured.append(task)
        return True

    monkeypatch.setattr("app.services.queue.enqueue_task", _fake_enqueue)

    assert requeue_if_failed(_notification(attempts=1), delay_seconds=4) is True
    assert captured[0].attempts == 2


@pytest.mark.asyncio
async def test_process_notification_task_dispatches(monkeypatch: pytest.MonkeyPatch) -> None:
    dispatched: list[ConsentNotification] = []
    monkeypatch.setattr(dispatch, "_dispatch", dispatched.append)
    notification = _notification()
    task = QueuedTask(
        task_type=TASK_TYPE,
        payload={
            "kind": notification.kind,
            "family_id": notification.family_id,
            "proposal_id": str(notification.proposal_id),
            "recipient_ids": notification.recipient_ids,
            "payload": notification.payload,
        },
        created_at=notification.created_at,
    )

    await dispatch.process_notification_task(task)

    assert dispatched == [notification]


def test_render_messages_fans_out_one_message_per_guardian() -> None:
    notification = ConsentNotification(
        kind="safety_setting.proposed",
        family_id="family-1",
        proposal_id=uuid4(),
        subject_key="time_limits",
        recipient_ids=["bob", "carol", "bob"],
        payload={
            "status": "pending_approval",
            "is_emergency_increase": True,
            "expires_at": "2026-03-05T09:00:00",
        },
    )

    messages = dispatch.render_messages(notification)

    assert [m.recipient_id for m in messages] == ["bob", "carol"]
    assert messages[0].title == "New safety setting request"
    assert "time_limits" in messages[0].body
    assert "2026-03-05T09:00:00" in messages[0].body
    assert {m.priority for m in messages} == {dispatch.HIGH_PRIORITY}


def test_render_messages_mentions_cooling_period_and_decline_reason() -> None:
    approved = ConsentNotification(
        kind="agreement_change.approved",
        family_id="family-1",
        proposal_id=uuid4(),
        subject_key="screen_time",
        recipient_ids=["alice"],
        payload={"status": "cooling_period", "effective_at": "2026-03-04T09:00:00"},
    )
    declined = _notification()

    (approved_message,) = dispatch.render_messages(approved)
    (declined_message,) = dispatch.render_messages(declined)

    assert approved_message.title == "Your family agreement request was approved"
    assert "2026-03-04T09:00:00" in approved_message.body
    assert approved_message.priority == dispatch.NORMAL_PRIORITY
    assert declined_message.title == "Your family agreement request was declined"
    assert "Not right now" in declined_message.body


def test_completed_dissolution_requests_deletion(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []

    def _fake_info(message: str, *args: object, **kwargs: object) -> None:
        events.append(message)

    monkeypatch.setattr(dispatch.logger, "info", _fake_info)
    notification = ConsentNotification(
        kind="dissolution.completed",
        family_id="family-1",
        proposal_id=uuid4(),
        recipient_ids=["alice", "bob"],
        payload={"status": "completed", "data_handling_option": "delete_all"},
    )

    messages = dispatch._dispatch(notification)

    assert len(messages) == 2
    assert all(m.priority == dispatch.HIGH_PRIORITY for m in messages)
    assert events.count("consent.notification.delivered") == 2
    assert events[-1] == "consent.dissolution.deletion_requested"


def test_other_kinds_do_not_request_deletion(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []

    def _fake_info(message: str, *args: object, **kwargs: object) -> None:
        events.append(message)

    monkeypatch.setattr(dispatch.logger, "info", _fake_info)

    dispatch._dispatch(_notification())

    assert "consent.dissolution.deletion_requested" not in events


def test_subject_key_survives_queue_encoding(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[QueuedTask] = []

    def _fake_enqueue(task: QueuedTask, queue_name: str, *, redis_url: str | None = None) -> bool:
        captured.append(task)
        return True

    monkeypatch.setattr("app.services.consent_notifications.queue.enqueue_task", _fake_enqueue)
    notification = ConsentNotification(
        kind="safety_setting.approved",
        family_id="family-1",
        proposal_id=uuid4(),
        subject_key="crisis_allowlist",
        recipient_ids=["alice", "alice"],
    )

    enqueue_notification(notification)

    assert captured[0].payload["recipient_ids"] == ["alice"]
    assert decode_notification_task(captured[0]).subject_key == "crisis_allowlist"
