# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the mail dispatcher.

This module provides the Persistence class that handles the durable state
of the dispatcher:

- Delivery log: one row per attempt chain, the single source of truth for
  its outcome (pending, sent, delivered, failed)
- Schedules: cancellation flag and occurrence counter of scheduled sends
- Preferences: per-recipient opt-outs and quiet hours

The job queue lives in the same database file (see ``queue.SqliteJobQueue``)
but owns its own table.

Status transitions are single conditional UPDATE statements guarded by
``status = 'pending'`` so a concurrent redelivery can never move a log out
of a terminal state.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/dispatcher.db")
        await persistence.init_db()

        log_id = await persistence.create_delivery_log(
            idempotency_key="job-1",
            recipient_email="user@example.com",
            template_used="welcome",
        )
        await persistence.update_delivery_status(
            log_id, DeliveryStatus.SENT, provider_message_id="abc"
        )
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import aiosqlite

from .models import DEFAULT_MAX_RETRIES, DEFAULT_PRIORITY, DeliveryLog, DeliveryStatus

_TS_COLUMNS = {
    "sent_ts": "sent_at",
    "failed_ts": "failed_at",
    "delivered_ts": "delivered_at",
    "opened_ts": "opened_at",
    "next_retry_ts": "next_retry_at",
    "created_ts": "created_at",
    "updated_ts": "updated_at",
}


def _now_ts() -> int:
    return int(time.time())


def _epoch(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return int(value.timestamp())


class Persistence:
    """Async SQLite persistence layer for delivery state.

    Each operation opens and closes its own connection, so a single instance
    is safe to share between concurrent processors.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: str = "/data/mail_dispatcher.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the delivery_log, schedules and preferences tables if missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_log (
                    id TEXT PRIMARY KEY,
                    idempotency_key TEXT UNIQUE,
                    user_id TEXT,
                    recipient_email TEXT NOT NULL,
                    schedule_id TEXT,
                    email_type TEXT NOT NULL DEFAULT 'transactional',
                    template_used TEXT,
                    subject TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    priority INTEGER NOT NULL DEFAULT 50,
                    provider_message_id TEXT,
                    error_message TEXT,
                    sent_ts INTEGER,
                    failed_ts INTEGER,
                    delivered_ts INTEGER,
                    opened_ts INTEGER,
                    next_retry_ts INTEGER,
                    created_ts INTEGER NOT NULL,
                    updated_ts INTEGER NOT NULL,
                    CHECK (retry_count <= max_retries)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_delivery_log_provider ON delivery_log(provider_message_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_delivery_log_recipient ON delivery_log(recipient_email, status)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_delivery_log_created ON delivery_log(created_ts)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS schedules (
                    schedule_id TEXT PRIMARY KEY,
                    recipient_email TEXT,
                    occurrences INTEGER NOT NULL DEFAULT 0,
                    next_occurrence_ts INTEGER,
                    cancelled_ts INTEGER,
                    cancel_reason TEXT,
                    created_ts INTEGER NOT NULL,
                    updated_ts INTEGER NOT NULL
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS preferences (
                    email TEXT PRIMARY KEY,
                    email_enabled INTEGER NOT NULL DEFAULT 1,
                    disabled_categories TEXT,
                    quiet_hours_enabled INTEGER NOT NULL DEFAULT 0,
                    quiet_hours_start TEXT DEFAULT '22:00',
                    quiet_hours_end TEXT DEFAULT '08:00',
                    quiet_hours_timezone TEXT DEFAULT 'UTC',
                    updated_ts INTEGER
                )
                """
            )
            await db.commit()

    # Delivery log -------------------------------------------------------------
    @staticmethod
    def _decode_log_row(row: Tuple[Any, ...], columns: Sequence[str]) -> DeliveryLog:
        data = dict(zip(columns, row))
        for column, attr in _TS_COLUMNS.items():
            if column in data:
                data[attr] = data.pop(column)
        return DeliveryLog.model_validate(data)

    async def create_delivery_log(
        self,
        *,
        idempotency_key: str,
        recipient_email: str,
        user_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        email_type: str = "transactional",
        template_used: Optional[str] = None,
        subject: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Create the pending log of an attempt chain and return its id.

        The insert is idempotent on ``idempotency_key``: a redelivered job gets
        back the id of the log created by its first delivery, whatever state
        that log is in now.
        """
        now = _now_ts()
        log_id = uuid4().hex
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO delivery_log
                (id, idempotency_key, user_id, recipient_email, schedule_id, email_type,
                 template_used, subject, status, retry_count, max_retries, priority,
                 created_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                ON CONFLICT(idempotency_key) DO NOTHING
                """,
                (
                    log_id,
                    idempotency_key,
                    user_id,
                    recipient_email,
                    schedule_id,
                    email_type,
                    template_used,
                    subject,
                    max(0, int(max_retries)),
                    int(priority),
                    now,
                    now,
                ),
            )
            await db.commit()
            async with db.execute(
                "SELECT id FROM delivery_log WHERE idempotency_key = ?", (idempotency_key,)
            ) as cur:
                row = await cur.fetchone()
        return row[0]

    async def get_delivery_log(self, log_id: str) -> Optional[DeliveryLog]:
        """Fetch a delivery log by id, or None."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM delivery_log WHERE id = ?", (log_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_log_row(row, cols)

    async def get_delivery_log_by_provider_id(self, provider_message_id: str) -> Optional[DeliveryLog]:
        """Fetch the log that recorded a given provider message id."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM delivery_log WHERE provider_message_id = ? LIMIT 1",
                (provider_message_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_log_row(row, cols)

    async def update_delivery_status(
        self,
        log_id: str,
        status: DeliveryStatus | str,
        *,
        provider_message_id: Optional[str] = None,
        error_message: Optional[str] = None,
        subject: Optional[str] = None,
        next_retry_at: Any = None,
    ) -> bool:
        """Apply a status change to a pending log.

        Only logs still ``pending`` are touched. Setting ``pending`` again is
        allowed and only refreshes the error and retry fields.

        Returns:
            True if the log was pending and got updated, False otherwise.
        """
        status = DeliveryStatus(status)
        if status == DeliveryStatus.DELIVERED:
            raise ValueError("delivered is only set through mark_delivered()")

        now = _now_ts()
        set_parts = ["status = ?", "updated_ts = ?"]
        values: List[Any] = [status.value, now]
        if status == DeliveryStatus.SENT:
            set_parts += ["sent_ts = ?", "next_retry_ts = NULL"]
            values.append(now)
        elif status == DeliveryStatus.FAILED:
            set_parts += ["failed_ts = ?", "next_retry_ts = NULL"]
            values.append(now)
        if provider_message_id is not None:
            set_parts.append("provider_message_id = ?")
            values.append(provider_message_id)
        if error_message is not None:
            set_parts.append("error_message = ?")
            values.append(error_message)
        if subject is not None:
            set_parts.append("subject = ?")
            values.append(subject)
        if next_retry_at is not None:
            set_parts.append("next_retry_ts = ?")
            values.append(_epoch(next_retry_at))
        values.append(log_id)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE delivery_log SET {', '.join(set_parts)} WHERE id = ? AND status = 'pending'",
                tuple(values),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_retry_count(self, log_id: str, expected: Optional[int] = None) -> bool:
        """Consume one unit of the retry budget of a pending log.

        The claimed attempt clears ``next_retry_at``. With ``expected`` the
        update only applies while ``retry_count`` still has that value, so a
        redelivered retry job cannot claim the same attempt twice.

        Returns:
            False when the log is not pending, the budget is already spent or
            ``retry_count`` moved past ``expected``.
        """
        query = """
            UPDATE delivery_log
            SET retry_count = retry_count + 1, next_retry_ts = NULL, updated_ts = ?
            WHERE id = ? AND status = 'pending' AND retry_count < max_retries
        """
        params: tuple = (_now_ts(), log_id)
        if expected is not None:
            query += " AND retry_count = ?"
            params += (int(expected),)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount > 0

    async def mark_delivered(self, provider_message_id: str, delivered_ts: Optional[int] = None) -> bool:
        """Record the provider's delivery confirmation (sent -> delivered)."""
        ts = delivered_ts or _now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE delivery_log
                SET status = 'delivered', delivered_ts = ?, updated_ts = ?
                WHERE provider_message_id = ? AND status = 'sent'
                """,
                (ts, ts, provider_message_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_opened(self, provider_message_id: str, opened_ts: Optional[int] = None) -> bool:
        """Record the first open of a sent or delivered email."""
        ts = opened_ts or _now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE delivery_log
                SET opened_ts = ?, updated_ts = ?
                WHERE provider_message_id = ?
                  AND status IN ('sent', 'delivered')
                  AND opened_ts IS NULL
                """,
                (ts, ts, provider_message_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def has_unread_emails(self, recipient_email: str) -> bool:
        """True if the recipient has sent or delivered emails not yet opened."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT 1 FROM delivery_log
                WHERE recipient_email = ?
                  AND status IN ('sent', 'delivered')
                  AND opened_ts IS NULL
                LIMIT 1
                """,
                (recipient_email,),
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def list_delivery_logs(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        recipient_email: Optional[str] = None,
        schedule_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[DeliveryLog]:
        """Return the most recent delivery logs, newest first, with optional filters."""
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("status", status),
            ("user_id", user_id),
            ("recipient_email", recipient_email),
            ("schedule_id", schedule_id),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT * FROM delivery_log {where} ORDER BY created_ts DESC, id DESC LIMIT ?",
                tuple(params),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_log_row(row, cols) for row in rows]

    async def delivery_stats(self, *, user_id: Optional[str] = None, since_ts: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate counts per status plus delivery and open rates."""
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if since_ts is not None:
            clauses.append("created_ts >= ?")
            params.append(int(since_ts))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT status, COUNT(*), SUM(CASE WHEN opened_ts IS NOT NULL THEN 1 ELSE 0 END)
                FROM delivery_log {where}
                GROUP BY status
                """,
                tuple(params),
            ) as cur:
                rows = await cur.fetchall()

        stats: Dict[str, Any] = {status.value: 0 for status in DeliveryStatus}
        opened = 0
        for status, count, opened_count in rows:
            stats[status] = int(count)
            opened += int(opened_count or 0)
        total = sum(stats[status.value] for status in DeliveryStatus)
        reached = stats["sent"] + stats["delivered"]
        stats["total"] = total
        stats["opened"] = opened
        stats["delivery_rate"] = round(reached / total * 100, 2) if total else 0.0
        stats["open_rate"] = round(opened / reached * 100, 2) if reached else 0.0
        return stats

    async def purge_delivery_logs_before(self, threshold_ts: int) -> int:
        """Delete terminal logs created before ``threshold_ts``; pending logs are kept."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM delivery_log WHERE created_ts < ? AND status != 'pending'",
                (int(threshold_ts),),
            )
            await db.commit()
            return cursor.rowcount

    # Schedules ----------------------------------------------------------------
    async def ensure_schedule(self, schedule_id: str, recipient_email: Optional[str] = None) -> None:
        """Register a schedule id on first sight."""
        now = _now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO schedules (schedule_id, recipient_email, created_ts, updated_ts)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(schedule_id) DO NOTHING
                """,
                (schedule_id, recipient_email, now, now),
            )
            await db.commit()

    async def get_schedule(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM schedules WHERE schedule_id = ?", (schedule_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        schedule = dict(zip(cols, row))
        schedule["cancelled"] = schedule.get("cancelled_ts") is not None
        return schedule

    async def is_schedule_cancelled(self, schedule_id: str) -> bool:
        schedule = await self.get_schedule(schedule_id)
        return bool(schedule and schedule["cancelled"])

    async def cancel_schedule(self, schedule_id: str, reason: str = "cancelled") -> bool:
        """Cancel a schedule; jobs already enqueued for it become no-ops.

        Returns:
            True if the schedule was active and is now cancelled.
        """
        now = _now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO schedules (schedule_id, created_ts, updated_ts)
                VALUES (?, ?, ?)
                ON CONFLICT(schedule_id) DO NOTHING
                """,
                (schedule_id, now, now),
            )
            cursor = await db.execute(
                """
                UPDATE schedules
                SET cancelled_ts = ?, cancel_reason = ?, updated_ts = ?
                WHERE schedule_id = ? AND cancelled_ts IS NULL
                """,
                (now, reason, now, schedule_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_schedule_occurrences(self, schedule_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE schedules
                SET occurrences = occurrences + 1, updated_ts = ?
                WHERE schedule_id = ?
                """,
                (_now_ts(), schedule_id),
            )
            await db.commit()

    async def record_next_occurrence(self, schedule_id: str, next_ts: int) -> bool:
        """Remember that the occurrence at ``next_ts`` has been enqueued.

        Returns:
            False if that occurrence (or a later one) was already recorded, so
            a redelivered job does not enqueue it twice.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE schedules
                SET next_occurrence_ts = ?, updated_ts = ?
                WHERE schedule_id = ?
                  AND (next_occurrence_ts IS NULL OR next_occurrence_ts < ?)
                """,
                (int(next_ts), _now_ts(), schedule_id, int(next_ts)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_schedules(self, *, include_cancelled: bool = True) -> List[Dict[str, Any]]:
        query = "SELECT * FROM schedules"
        if not include_cancelled:
            query += " WHERE cancelled_ts IS NULL"
        query += " ORDER BY created_ts DESC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = [dict(zip(cols, row)) for row in rows]
        for schedule in result:
            schedule["cancelled"] = schedule.get("cancelled_ts") is not None
        return result

    # Preferences --------------------------------------------------------------
    async def set_preferences(self, email: str, prefs: Dict[str, Any]) -> None:
        """Insert or overwrite the preferences of a recipient."""
        categories = prefs.get("disabled_categories") or []
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO preferences
                (email, email_enabled, disabled_categories, quiet_hours_enabled,
                 quiet_hours_start, quiet_hours_end, quiet_hours_timezone, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    email.lower(),
                    1 if prefs.get("email_enabled", True) else 0,
                    json.dumps(sorted(set(categories))),
                    1 if prefs.get("quiet_hours_enabled") else 0,
                    prefs.get("quiet_hours_start") or "22:00",
                    prefs.get("quiet_hours_end") or "08:00",
                    prefs.get("quiet_hours_timezone") or "UTC",
                    _now_ts(),
                ),
            )
            await db.commit()

    async def get_preferences(self, email: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM preferences WHERE email = ?", (email.lower(),)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        prefs = dict(zip(cols, row))
        prefs["email_enabled"] = bool(prefs["email_enabled"])
        prefs["quiet_hours_enabled"] = bool(prefs["quiet_hours_enabled"])
        raw = prefs.get("disabled_categories")
        prefs["disabled_categories"] = json.loads(raw) if raw else []
        return prefs

