# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient preference gate consulted before scheduled sends.

A gate answers four questions: may this recipient receive this category,
is it quiet time for them, when does quiet time end, and do they still have
unread emails. :class:`StoredPreferenceGate` answers them from the
``preferences`` table and the delivery log.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, Sequence

from .persistence import Persistence
from .recurrence import quiet_hours_window

QUIET_HOURS_BYPASS_PRIORITY = 80
"""Jobs at or above this priority ignore quiet hours."""

CRITICAL_CATEGORIES = frozenset({"verification", "password_reset", "security"})
"""Categories that ignore quiet hours."""


class BlockReason(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    CATEGORY_DISABLED = "category_disabled"
    UNREAD = "unread"
    QUIET_HOURS = "quiet_hours"


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: BlockReason | None = None
    detail: str | None = None
    next_allowed: datetime | None = None

    @classmethod
    def allow(cls) -> PolicyDecision:
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: BlockReason, detail: str | None = None, next_allowed: datetime | None = None) -> PolicyDecision:
        return cls(allowed=False, reason=reason, detail=detail, next_allowed=next_allowed)


class PreferenceGate(Protocol):
    async def is_allowed(self, recipient: str, categories: Sequence[str]) -> PolicyDecision: ...

    async def is_quiet_hours(self, recipient: str, now: datetime | None = None) -> bool: ...

    async def get_next_allowed_time(self, recipient: str, now: datetime | None = None) -> datetime: ...

    async def has_unread_emails(self, recipient: str) -> bool: ...


def bypasses_quiet_hours(priority: int, categories: Sequence[str] = ()) -> bool:
    return priority >= QUIET_HOURS_BYPASS_PRIORITY or any(c in CRITICAL_CATEGORIES for c in categories)


class StoredPreferenceGate:
    """Preference gate backed by :class:`Persistence`.

    Recipients without a preferences row accept everything and have no
    quiet hours.
    """

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def is_allowed(self, recipient: str, categories: Sequence[str]) -> PolicyDecision:
        prefs = await self.persistence.get_preferences(recipient)
        if not prefs:
            return PolicyDecision.allow()
        if not prefs["email_enabled"]:
            return PolicyDecision.block(BlockReason.UNSUBSCRIBED, "recipient disabled email")
        disabled = set(prefs["disabled_categories"])
        for category in categories:
            if category in disabled:
                return PolicyDecision.block(BlockReason.CATEGORY_DISABLED, f"category '{category}' is disabled")
        return PolicyDecision.allow()

    async def _window(self, recipient: str, now: datetime | None) -> tuple[bool, datetime]:
        now = now or datetime.now(timezone.utc)
        prefs = await self.persistence.get_preferences(recipient)
        if not prefs or not prefs["quiet_hours_enabled"]:
            return False, now
        return quiet_hours_window(
            now,
            prefs["quiet_hours_start"] or "22:00",
            prefs["quiet_hours_end"] or "08:00",
            prefs["quiet_hours_timezone"] or "UTC",
        )

    async def is_quiet_hours(self, recipient: str, now: datetime | None = None) -> bool:
        in_quiet, _ = await self._window(recipient, now)
        return in_quiet

    async def get_next_allowed_time(self, recipient: str, now: datetime | None = None) -> datetime:
        _, next_allowed = await self._window(recipient, now)
        return next_allowed

    async def has_unread_emails(self, recipient: str) -> bool:
        return await self.persistence.has_unread_emails(recipient)
