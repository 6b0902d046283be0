# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Worker orchestration for the mail dispatcher.

:class:`MailDispatcher` wires the delivery log, the job queue and the three
processors together and runs the consume loop:

- reserve a batch of ready jobs under a lease
- route each job to its processor by ``kind``
- acknowledge jobs that completed or failed permanently
- give back (with a delay) jobs whose processor crashed

A maintenance loop applies log retention and prunes idle SMTP sessions.

Example:
    Running a worker::

        from mail_dispatcher.core import MailDispatcher

        dispatcher = MailDispatcher(
            db_path="/data/dispatcher.db",
            transport=SmtpTransport("smtp.example.com", 587),
        )
        await dispatcher.start()
        await dispatcher.enqueue(ImmediateJob(recipient="ada@example.com", template_or_content="welcome"))
        ...
        await dispatcher.stop()
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, assert_never

from pydantic import ValidationError

from .config import DispatcherConfig
from .errors import PermanentDeliveryError
from .logger import get_logger
from .metrics import DeliveryMetrics
from .models import ImmediateJob, RetryJob, ScheduledJob
from .persistence import Persistence
from .preferences import PreferenceGate, StoredPreferenceGate
from .processors import DispatchProcessor, RetryProcessor, ScheduledProcessor
from .queue import QueuedJob, SqliteJobQueue
from .templates import TemplateRegistry, TemplateRenderer
from .transport import TransportClient

MAINTENANCE_INTERVAL = 150.0


class MailDispatcher:
    """Central coordinator of the delivery engine.

    Attributes:
        config: Dispatcher configuration.
        persistence: Delivery log, schedules and preferences store.
        queue: Job queue the worker consumes and processors enqueue into.
        metrics: Prometheus collector shared by the processors.
        dispatch: Processor for immediate jobs.
        retry: Processor for retry jobs.
        scheduled: Processor for scheduled jobs.
    """

    def __init__(
        self,
        *,
        transport: TransportClient,
        db_path: str | None = None,
        config: DispatcherConfig | None = None,
        renderer: TemplateRenderer | None = None,
        gate: PreferenceGate | None = None,
        queue: SqliteJobQueue | None = None,
        metrics: DeliveryMetrics | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] | None = None,
        test_mode: bool = False,
    ):
        """Build the dispatcher and its processors.

        Args:
            transport: Transport client used by every processor.
            db_path: SQLite path; overrides ``config.db_path`` when given.
            config: Dispatcher configuration; defaults to ``DispatcherConfig()``.
            renderer: Template renderer; defaults to the built-in templates.
            gate: Preference gate; defaults to the stored preferences.
            queue: Job queue; defaults to a SQLite queue in the same database.
            metrics: Prometheus collector.
            logger: Custom logger instance.
            clock: Callable returning the current aware UTC datetime.
            test_mode: Do not start the worker loop; drive it with :meth:`run_once`.
        """
        self.config = config or DispatcherConfig()
        if db_path:
            self.config.db_path = db_path
        self.logger = logger or get_logger()
        self.persistence = Persistence(self.config.db_path)
        self.queue = queue or SqliteJobQueue(self.config.db_path)
        self.renderer = renderer or TemplateRegistry.with_defaults()
        self.transport = transport
        self.gate = gate or StoredPreferenceGate(self.persistence)
        self.metrics = metrics or DeliveryMetrics()
        self._test_mode = bool(test_mode)

        shared: dict[str, Any] = {
            "persistence": self.persistence,
            "queue": self.queue,
            "renderer": self.renderer,
            "transport": self.transport,
            "metrics": self.metrics,
            "config": self.config,
            "clock": clock,
        }
        self.dispatch = DispatchProcessor(**shared)
        self.retry = RetryProcessor(**shared)
        self.scheduled = ScheduledProcessor(gate=self.gate, **shared)

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_worker: asyncio.Task | None = None
        self._task_maintenance: asyncio.Task | None = None
        self._poll_interval = math.inf if self._test_mode else max(0.05, float(self.config.timing.poll_interval))

    async def init(self) -> None:
        """Create the database schema and prime the pending gauge."""
        await self.persistence.init_db()
        await self.queue.init_db()
        await self._refresh_queue_gauge()

    # ---------------------------------------------------------------- producers
    async def enqueue(
        self,
        job: ImmediateJob | RetryJob | ScheduledJob,
        *,
        delay_ms: int | None = None,
        priority: int | None = None,
    ) -> str:
        """Put a job on the queue and wake the worker."""
        entry_id = await self.queue.enqueue(job, delay_ms=delay_ms, priority=priority)
        self._wake_event.set()
        return entry_id

    async def schedule(self, job: ScheduledJob) -> str:
        """Enqueue the first occurrence of a schedule, delayed until ``scheduled_at``."""
        await self.persistence.ensure_schedule(job.schedule_id, job.recipient)
        delay = max(0, int((job.scheduled_at.timestamp() - time.time()) * 1000))
        return await self.enqueue(job, delay_ms=delay)

    async def cancel_schedule(self, schedule_id: str, reason: str = "cancelled") -> bool:
        return await self.persistence.cancel_schedule(schedule_id, reason)

    # ----------------------------------------------------------- external signals
    async def mark_delivered(self, provider_message_id: str) -> bool:
        """Provider confirmed delivery of a sent email."""
        updated = await self.persistence.mark_delivered(provider_message_id)
        if not updated:
            log = await self.persistence.get_delivery_log_by_provider_id(provider_message_id)
            if log is None:
                self.logger.debug("No delivery log for provider id %s", provider_message_id)
            else:
                self.logger.debug(
                    "Delivery signal ignored for log %s: status is %s", log.id, log.status.value
                )
        return updated

    async def mark_opened(self, provider_message_id: str) -> bool:
        return await self.persistence.mark_opened(provider_message_id)

    # ------------------------------------------------------------------ routing
    async def handle_job(self, job: ImmediateJob | RetryJob | ScheduledJob) -> dict[str, Any]:
        """Route a job to the processor of its kind and return the outcome event."""
        match job:
            case ImmediateJob():
                return await self.dispatch.process(job)
            case RetryJob():
                return await self.retry.process(job)
            case ScheduledJob():
                return await self.scheduled.process(job)
            case _:
                assert_never(job)

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialize storage and spawn the worker and maintenance tasks."""
        self.logger.debug("Starting MailDispatcher...")
        await self.init()
        self._stop.clear()
        self._task_worker = asyncio.create_task(self._worker_loop(), name="mail-dispatch-worker")
        if not self._test_mode:
            self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="mail-maintenance")

    async def stop(self) -> None:
        """Signal the loops to stop and wait for them; in-flight jobs finish first."""
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(
            *(task for task in [self._task_worker, self._task_maintenance] if task),
            return_exceptions=True,
        )
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    def wake(self) -> None:
        self._wake_event.set()

    # ------------------------------------------------------------------ worker
    async def _worker_loop(self) -> None:
        self.logger.debug("Worker loop started")
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in worker loop: %s", exc)
                processed = 0
            if not processed:
                await self._wait_for_wakeup(self._poll_interval)

    async def run_once(self) -> int:
        """Reserve and process one batch of ready jobs. Returns how many were handled."""
        lease = self.config.timing.lease_seconds
        entries = await self.queue.reserve(limit=self.config.batch_size, lease_seconds=lease)
        for index, entry in enumerate(entries):
            if index:
                # renew the rest of the batch so its tail does not outlive the lease
                held = await self.queue.extend_lease([e.entry_id for e in entries[index:]], lease_seconds=lease)
                if entry.entry_id not in held:
                    self.logger.warning("Lease on job entry %s expired before processing; skipping", entry.entry_id)
                    continue
            await self._run_entry(entry)
        await self._refresh_queue_gauge()
        return len(entries)

    async def _run_entry(self, entry: QueuedJob) -> None:
        try:
            job = entry.job()
        except ValidationError as exc:
            self.logger.error("Dropping malformed %s job %s: %s", entry.kind, entry.entry_id, exc)
            await self.queue.ack(entry.entry_id)
            return

        try:
            await self.handle_job(job)
        except PermanentDeliveryError as exc:
            self.logger.warning("Job %s (%s) failed permanently: %s", job.job_id, job.kind, exc)
        except Exception:
            delay = self.config.timing.redelivery_delay_seconds
            self.logger.exception(
                "Processor crashed on job %s (%s, attempt %d); redelivering in %ss",
                job.job_id,
                job.kind,
                entry.attempts,
                delay,
            )
            await self.queue.release(entry.entry_id, delay_seconds=delay)
            return
        await self.queue.ack(entry.entry_id)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the worker until ``timeout`` expires or :meth:`wake` is called."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------- housekeeping
    async def purge_old_logs(self, days: int | None = None) -> int:
        """Delete terminal delivery logs older than ``days`` (default: configured retention)."""
        days = self.config.timing.log_retention_days if days is None else days
        if days <= 0:
            return 0
        removed = await self.persistence.purge_delivery_logs_before(int(time.time()) - days * 86400)
        if removed:
            self.logger.info("Purged %d delivery logs older than %d days", removed, days)
        return removed

    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(MAINTENANCE_INTERVAL):
                    await self._stop.wait()
                return
            except TimeoutError:
                pass
            try:
                await self.purge_old_logs()
                pool = getattr(self.transport, "pool", None)
                if pool is not None:
                    await pool.cleanup()
            except Exception:  # pragma: no cover - defensive
                self.logger.exception("Maintenance cycle failed")

    async def _refresh_queue_gauge(self) -> None:
        try:
            count = await self.queue.count()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)
