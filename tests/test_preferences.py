from datetime import datetime, timezone

import pytest

from mail_dispatcher.persistence import Persistence
from mail_dispatcher.preferences import BlockReason, StoredPreferenceGate, bypasses_quiet_hours

NIGHT = datetime(2025, 1, 1, 23, 0, tzinfo=timezone.utc)
NOON = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


async def make_gate(tmp_path) -> StoredPreferenceGate:
    persistence = Persistence(str(tmp_path / "prefs.db"))
    await persistence.init_db()
    return StoredPreferenceGate(persistence)


@pytest.mark.asyncio
async def test_recipient_without_preferences_accepts_everything(tmp_path):
    gate = await make_gate(tmp_path)
    decision = await gate.is_allowed("ada@example.com", ["marketing"])
    assert decision.allowed is True
    assert await gate.is_quiet_hours("ada@example.com", NIGHT) is False
    assert await gate.get_next_allowed_time("ada@example.com", NIGHT) == NIGHT


@pytest.mark.asyncio
async def test_unsubscribed_and_disabled_category(tmp_path):
    gate = await make_gate(tmp_path)
    await gate.persistence.set_preferences("off@example.com", {"email_enabled": False})
    await gate.persistence.set_preferences("ada@example.com", {"disabled_categories": ["marketing"]})

    off = await gate.is_allowed("off@example.com", [])
    assert off.allowed is False
    assert off.reason == BlockReason.UNSUBSCRIBED

    blocked = await gate.is_allowed("ada@example.com", ["news", "marketing"])
    assert blocked.reason == BlockReason.CATEGORY_DISABLED
    assert "marketing" in blocked.detail
    assert (await gate.is_allowed("ada@example.com", ["news"])).allowed is True


@pytest.mark.asyncio
async def test_quiet_hours(tmp_path):
    gate = await make_gate(tmp_path)
    await gate.persistence.set_preferences(
        "ada@example.com",
        {"quiet_hours_enabled": True, "quiet_hours_start": "22:00", "quiet_hours_end": "08:00"},
    )
    assert await gate.is_quiet_hours("ada@example.com", NIGHT) is True
    assert await gate.get_next_allowed_time("ada@example.com", NIGHT) == datetime(2025, 1, 2, 8, 0, tzinfo=timezone.utc)
    assert await gate.is_quiet_hours("ada@example.com", NOON) is False


@pytest.mark.asyncio
async def test_unread_emails_come_from_delivery_log(tmp_path):
    gate = await make_gate(tmp_path)
    log_id = await gate.persistence.create_delivery_log(idempotency_key="j", recipient_email="ada@example.com")
    await gate.persistence.update_delivery_status(log_id, "sent", provider_message_id="pm")
    assert await gate.has_unread_emails("ada@example.com") is True


def test_bypasses_quiet_hours():
    assert bypasses_quiet_hours(80) is True
    assert bypasses_quiet_hours(79) is False
    assert bypasses_quiet_hours(10, ["password_reset"]) is True
    assert bypasses_quiet_hours(50, ["digest"]) is False
