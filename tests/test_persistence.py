import sqlite3
import time
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from mail_dispatcher.models import DeliveryStatus
from mail_dispatcher.persistence import Persistence


async def make_persistence(tmp_path) -> Persistence:
    p = Persistence(str(tmp_path / "dispatcher.db"))
    await p.init_db()
    return p


@pytest.mark.asyncio
async def test_create_delivery_log_is_idempotent(tmp_path):
    p = await make_persistence(tmp_path)
    first = await p.create_delivery_log(
        idempotency_key="job-1",
        recipient_email="ada@example.com",
        user_id="u1",
        template_used="welcome",
        max_retries=2,
        priority=75,
    )
    second = await p.create_delivery_log(idempotency_key="job-1", recipient_email="other@example.com")
    assert first == second

    log = await p.get_delivery_log(first)
    assert log.status == DeliveryStatus.PENDING
    assert log.recipient_email == "ada@example.com"
    assert log.retry_count == 0
    assert log.max_retries == 2
    assert log.priority == 75
    assert log.created_at is not None
    assert await p.get_delivery_log("missing") is None


@pytest.mark.asyncio
async def test_update_status_only_from_pending(tmp_path):
    p = await make_persistence(tmp_path)
    log_id = await p.create_delivery_log(idempotency_key="job-2", recipient_email="ada@example.com")

    retry_at = datetime.now(timezone.utc) + timedelta(minutes=2)
    assert await p.update_delivery_status(log_id, "pending", error_message="timeout", next_retry_at=retry_at)
    log = await p.get_delivery_log(log_id)
    assert log.error_message == "timeout"
    assert int(log.next_retry_at.timestamp()) == int(retry_at.timestamp())

    assert await p.update_delivery_status(log_id, DeliveryStatus.SENT, provider_message_id="pm-1", subject="Hi")
    log = await p.get_delivery_log(log_id)
    assert log.status == DeliveryStatus.SENT
    assert log.sent_at is not None
    assert log.next_retry_at is None
    assert log.subject == "Hi"

    # terminal: no further transitions
    assert not await p.update_delivery_status(log_id, "failed", error_message="late")
    assert (await p.get_delivery_log(log_id)).status == DeliveryStatus.SENT


@pytest.mark.asyncio
async def test_delivered_is_reserved_for_provider_signal(tmp_path):
    p = await make_persistence(tmp_path)
    log_id = await p.create_delivery_log(idempotency_key="job-3", recipient_email="ada@example.com")
    with pytest.raises(ValueError):
        await p.update_delivery_status(log_id, "delivered")

    assert not await p.mark_delivered("pm-3")
    await p.update_delivery_status(log_id, "sent", provider_message_id="pm-3")
    assert await p.mark_delivered("pm-3")
    log = await p.get_delivery_log_by_provider_id("pm-3")
    assert log.id == log_id
    assert log.status == DeliveryStatus.DELIVERED
    assert log.delivered_at is not None
    assert not await p.mark_delivered("pm-3")


@pytest.mark.asyncio
async def test_retry_budget_cannot_be_exceeded(tmp_path):
    p = await make_persistence(tmp_path)
    log_id = await p.create_delivery_log(idempotency_key="job-4", recipient_email="ada@example.com", max_retries=2)
    assert await p.increment_retry_count(log_id)
    assert await p.increment_retry_count(log_id)
    assert not await p.increment_retry_count(log_id)
    assert (await p.get_delivery_log(log_id)).retry_count == 2

    async with aiosqlite.connect(p.db_path) as db:
        with pytest.raises(sqlite3.IntegrityError):
            await db.execute("UPDATE delivery_log SET retry_count = 3 WHERE id = ?", (log_id,))


@pytest.mark.asyncio
async def test_opened_and_unread(tmp_path):
    p = await make_persistence(tmp_path)
    assert not await p.has_unread_emails("ada@example.com")
    log_id = await p.create_delivery_log(idempotency_key="job-5", recipient_email="ada@example.com")
    # pending emails are not unread
    assert not await p.has_unread_emails("ada@example.com")
    assert not await p.mark_opened("pm-5")

    await p.update_delivery_status(log_id, "sent", provider_message_id="pm-5")
    assert await p.has_unread_emails("ada@example.com")
    assert await p.mark_opened("pm-5")
    assert not await p.mark_opened("pm-5")
    assert not await p.has_unread_emails("ada@example.com")
    assert (await p.get_delivery_log(log_id)).opened_at is not None


@pytest.mark.asyncio
async def test_list_and_stats(tmp_path):
    p = await make_persistence(tmp_path)
    ids = []
    for i in range(4):
        ids.append(
            await p.create_delivery_log(
                idempotency_key=f"job-{i}", recipient_email=f"u{i}@example.com", user_id="u1" if i < 3 else "u2"
            )
        )
    await p.update_delivery_status(ids[0], "sent", provider_message_id="pm-0")
    await p.update_delivery_status(ids[1], "sent", provider_message_id="pm-1")
    await p.update_delivery_status(ids[2], "failed", error_message="bounced")
    await p.mark_opened("pm-0")

    failed = await p.list_delivery_logs(status="failed")
    assert [log.id for log in failed] == [ids[2]]
    assert len(await p.list_delivery_logs(user_id="u1")) == 3
    assert len(await p.list_delivery_logs(limit=2)) == 2

    stats = await p.delivery_stats(user_id="u1")
    assert stats["total"] == 3
    assert stats["sent"] == 2
    assert stats["failed"] == 1
    assert stats["pending"] == 0
    assert stats["opened"] == 1
    assert stats["delivery_rate"] == pytest.approx(66.67)
    assert stats["open_rate"] == 50.0

    empty = await p.delivery_stats(since_ts=int(time.time()) + 3600)
    assert empty["total"] == 0
    assert empty["delivery_rate"] == 0.0


@pytest.mark.asyncio
async def test_purge_keeps_pending_logs(tmp_path):
    p = await make_persistence(tmp_path)
    pending = await p.create_delivery_log(idempotency_key="job-p", recipient_email="a@example.com")
    done = await p.create_delivery_log(idempotency_key="job-d", recipient_email="b@example.com")
    await p.update_delivery_status(done, "failed", error_message="x")

    assert await p.purge_delivery_logs_before(int(time.time()) - 3600) == 0
    assert await p.purge_delivery_logs_before(int(time.time()) + 10) == 1
    assert await p.get_delivery_log(done) is None
    assert await p.get_delivery_log(pending) is not None


@pytest.mark.asyncio
async def test_schedule_lifecycle(tmp_path):
    p = await make_persistence(tmp_path)
    await p.ensure_schedule("digest", "ada@example.com")
    await p.ensure_schedule("digest", "other@example.com")
    schedule = await p.get_schedule("digest")
    assert schedule["recipient_email"] == "ada@example.com"
    assert schedule["cancelled"] is False

    await p.increment_schedule_occurrences("digest")
    assert (await p.get_schedule("digest"))["occurrences"] == 1

    assert await p.record_next_occurrence("digest", 1_000)
    assert not await p.record_next_occurrence("digest", 1_000)
    assert not await p.record_next_occurrence("digest", 900)
    assert await p.record_next_occurrence("digest", 2_000)

    assert await p.cancel_schedule("digest", "unsubscribed")
    assert not await p.cancel_schedule("digest")
    assert await p.is_schedule_cancelled("digest")
    assert (await p.get_schedule("digest"))["cancel_reason"] == "unsubscribed"

    # cancelling an unknown schedule registers it as cancelled
    assert await p.cancel_schedule("never-seen")
    assert await p.is_schedule_cancelled("never-seen")
    assert [s["schedule_id"] for s in await p.list_schedules(include_cancelled=False)] == []
    assert len(await p.list_schedules()) == 2


@pytest.mark.asyncio
async def test_preferences_roundtrip(tmp_path):
    p = await make_persistence(tmp_path)
    assert await p.get_preferences("ada@example.com") is None
    await p.set_preferences(
        "Ada@Example.com",
        {
            "email_enabled": True,
            "disabled_categories": ["marketing", "marketing", "digest"],
            "quiet_hours_enabled": True,
            "quiet_hours_start": "21:30",
            "quiet_hours_end": "07:00",
            "quiet_hours_timezone": "Europe/Rome",
        },
    )
    prefs = await p.get_preferences("ada@example.com")
    assert prefs["email_enabled"] is True
    assert prefs["disabled_categories"] == ["digest", "marketing"]
    assert prefs["quiet_hours_enabled"] is True
    assert prefs["quiet_hours_start"] == "21:30"
    assert prefs["quiet_hours_timezone"] == "Europe/Rome"


@pytest.mark.asyncio
async def test_retry_increment_with_expected_count(tmp_path):
    p = await make_persistence(tmp_path)
    log_id = await p.create_delivery_log(idempotency_key="job-9", recipient_email="ada@example.com", max_retries=3)
    await p.update_delivery_status(log_id, "pending", next_retry_at=datetime(2025, 1, 1, tzinfo=timezone.utc))

    assert await p.increment_retry_count(log_id, expected=0)
    assert not await p.increment_retry_count(log_id, expected=0)
    log = await p.get_delivery_log(log_id)
    assert log.retry_count == 1
    assert log.next_retry_at is None
