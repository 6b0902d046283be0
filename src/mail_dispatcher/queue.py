# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""At-least-once job queue.

Processors only need :class:`JobQueue` (``enqueue`` with an optional delay
and priority). :class:`SqliteJobQueue` is the reference implementation used
by the worker: jobs live in a ``jobs`` table next to the delivery log, a
worker reserves ready jobs under a lease, and a job whose lease expires
before it is acknowledged becomes visible again.

Example:
    Producer and consumer sides::

        queue = SqliteJobQueue("/data/dispatcher.db")
        await queue.init_db()
        await queue.enqueue(ImmediateJob(recipient="a@b.c", template_or_content="welcome"))

        for entry in await queue.reserve(limit=10, lease_seconds=300):
            ...
            await queue.ack(entry.entry_id)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Set
from uuid import uuid4

import aiosqlite

from .models import ImmediateJob, RetryJob, ScheduledJob, dump_job, parse_job

EmailJobModel = ImmediateJob | RetryJob | ScheduledJob


class JobQueue(Protocol):
    """What processors need from the queue."""

    async def enqueue(
        self,
        job: EmailJobModel,
        *,
        delay_ms: Optional[int] = None,
        priority: Optional[int] = None,
    ) -> str: ...


@dataclass
class QueuedJob:
    """A reserved queue entry.

    ``payload`` is the raw JSON; call :meth:`job` to validate it.
    """

    entry_id: str
    kind: str
    payload: str
    priority: int
    attempts: int
    available_ts: float

    def job(self) -> EmailJobModel:
        return parse_job(self.payload)


class SqliteJobQueue:
    """Delayed, prioritised job queue stored in SQLite.

    Higher ``priority`` values are reserved first; ties go to the job that
    became available earliest.
    """

    def __init__(self, db_path: str = "/data/mail_dispatcher.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 50,
                    available_ts REAL NOT NULL,
                    lease_until REAL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_ts INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(available_ts, priority)"
            )
            await db.commit()

    async def enqueue(
        self,
        job: EmailJobModel,
        *,
        delay_ms: Optional[int] = None,
        priority: Optional[int] = None,
    ) -> str:
        """Store a job, visible after ``delay_ms`` milliseconds. Returns the entry id."""
        now = time.time()
        available_ts = now + max(0, int(delay_ms or 0)) / 1000.0
        if priority is None:
            priority = getattr(job, "priority", None)
            if priority is None and isinstance(job, RetryJob):
                priority = job.original_payload.priority
        entry_id = uuid4().hex
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO jobs (id, kind, payload, priority, available_ts, created_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entry_id, job.kind, dump_job(job), int(priority or 0), available_ts, int(now)),
            )
            await db.commit()
        return entry_id

    async def reserve(
        self,
        *,
        limit: int = 50,
        lease_seconds: float = 300,
        now: Optional[float] = None,
    ) -> List[QueuedJob]:
        """Claim up to ``limit`` ready jobs for ``lease_seconds``.

        Selection and lease update run in one immediate transaction so two
        workers never claim the same entry at the same time.
        """
        now = time.time() if now is None else now
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT id, kind, payload, priority, attempts, available_ts
                    FROM jobs
                    WHERE available_ts <= ?
                      AND (lease_until IS NULL OR lease_until <= ?)
                    ORDER BY priority DESC, available_ts ASC, created_ts ASC
                    LIMIT ?
                    """,
                    (now, now, max(1, int(limit))),
                ) as cur:
                    rows = await cur.fetchall()
                for row in rows:
                    await db.execute(
                        "UPDATE jobs SET lease_until = ?, attempts = attempts + 1 WHERE id = ?",
                        (now + lease_seconds, row[0]),
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return [
            QueuedJob(
                entry_id=row[0],
                kind=row[1],
                payload=row[2],
                priority=int(row[3]),
                attempts=int(row[4]) + 1,
                available_ts=float(row[5]),
            )
            for row in rows
        ]

    async def ack(self, entry_id: str) -> bool:
        """Remove a completed job."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM jobs WHERE id = ?", (entry_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def extend_lease(
        self,
        entry_ids: Sequence[str],
        *,
        lease_seconds: float,
        now: Optional[float] = None,
    ) -> Set[str]:
        """Push the lease of reserved jobs ``lease_seconds`` past ``now``.

        Only leases that are still held are renewed; an expired entry may
        already belong to another worker.

        Returns:
            The ids whose lease was renewed.
        """
        now = time.time() if now is None else now
        held: Set[str] = set()
        async with aiosqlite.connect(self.db_path) as db:
            for entry_id in entry_ids:
                cursor = await db.execute(
                    "UPDATE jobs SET lease_until = ? WHERE id = ? AND lease_until > ?",
                    (now + lease_seconds, entry_id, now),
                )
                if cursor.rowcount > 0:
                    held.add(entry_id)
            await db.commit()
        return held

    async def release(self, entry_id: str, *, delay_seconds: float = 0) -> bool:
        """Give a reserved job back, visible again after ``delay_seconds``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE jobs SET lease_until = NULL, available_ts = ? WHERE id = ?",
                (time.time() + max(0.0, delay_seconds), entry_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count(self, *, ready_only: bool = False, now: Optional[float] = None) -> int:
        """Number of stored jobs (only those reservable right now if ``ready_only``)."""
        query = "SELECT COUNT(*) FROM jobs"
        params: tuple = ()
        if ready_only:
            now = time.time() if now is None else now
            query += " WHERE available_ts <= ? AND (lease_until IS NULL OR lease_until <= ?)"
            params = (now, now)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

