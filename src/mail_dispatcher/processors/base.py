# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Plumbing shared by the dispatch, retry and scheduled processors.

Processors never sleep and never spawn timers: every delay is expressed as
a delayed job on the queue. Collaborator calls (renderer, transport) are
bounded by ``asyncio.timeout`` and a timeout counts as a transient failure.

Each processor returns an event dict describing the outcome::

    {"id": <delivery log id>, "status": "sent", "kind": "immediate",
     "recipient": "...", "timestamp": "2025-01-01T10:00:00Z", ...}

Statuses: ``sent``, ``retry_scheduled``, ``failed``, ``skipped``,
``rescheduled``, ``cancelled`` and ``noop``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import DispatcherConfig
from ..errors import DeliveryError, InvalidRecipient, TransientDeliveryError
from ..logger import get_logger
from ..metrics import DeliveryMetrics
from ..models import ImmediateJob, InlineContent, RetryJob, ScheduledJob
from ..persistence import Persistence
from ..queue import JobQueue
from ..recurrence import retry_delay
from ..templates import RenderedEmail, TemplateRenderer, interpolate
from ..transport import OutgoingEmail, TransportClient, TransportResult

_EMAIL_RE = re.compile(r"^[^@\s<>,;]+@[^@\s<>,;]+\.[^@\s<>,;]+$")
MAX_RETRIES_EXCEEDED = "max retries exceeded"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def delay_ms_until(target: datetime, now: datetime) -> int:
    return max(0, int((target - now).total_seconds() * 1000))


class BaseProcessor:
    """Common collaborators and helpers of the three processors.

    Args:
        persistence: Delivery log store.
        queue: Where follow-up jobs (retries, next occurrences) are enqueued.
        renderer: Template renderer.
        transport: Transport client.
        metrics: Optional Prometheus collector.
        config: Timeouts, retry settings and logging switches.
        clock: Callable returning the current aware UTC datetime.
    """

    kind = "immediate"
    logger_name = "Processor"

    def __init__(
        self,
        *,
        persistence: Persistence,
        queue: JobQueue,
        renderer: TemplateRenderer,
        transport: TransportClient,
        metrics: DeliveryMetrics | None = None,
        config: DispatcherConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.renderer = renderer
        self.transport = transport
        self.metrics = metrics or DeliveryMetrics()
        self.config = config or DispatcherConfig()
        self.clock = clock or utc_now
        self.logger = logger or get_logger(self.logger_name)

    # ----------------------------------------------------------------- helpers
    @staticmethod
    def validate_recipient(recipient: str) -> None:
        if not recipient or not _EMAIL_RE.match(recipient.strip()):
            raise InvalidRecipient(recipient)

    async def render(self, template_or_content: str | InlineContent, context: dict[str, Any]) -> RenderedEmail:
        """Render with the configured timeout.

        Raises:
            TransientDeliveryError: The renderer timed out or raised an unexpected error.
            PermanentDeliveryError: Unknown template (``TemplateNotFound``).
        """
        try:
            async with asyncio.timeout(self.config.timing.render_timeout):
                return await self.renderer.render(template_or_content, context)
        except TimeoutError as exc:
            raise TransientDeliveryError("template rendering timed out", code="render_timeout") from exc
        except DeliveryError:
            raise
        except Exception as exc:
            self.logger.warning("Renderer raised %s", type(exc).__name__, exc_info=True)
            raise TransientDeliveryError(str(exc) or type(exc).__name__, code=type(exc).__name__) from exc

    async def render_payload(self, payload: ImmediateJob | ScheduledJob) -> RenderedEmail:
        """Render the content of an immediate or scheduled job."""
        if isinstance(payload, ImmediateJob):
            return await self.render(payload.template_or_content, payload.context)
        content = payload.content
        if content.template:
            rendered = await self.render(content.template, content.context)
            if content.subject:
                return RenderedEmail(
                    subject=interpolate(content.subject, content.context),
                    html=rendered.html,
                    text=rendered.text,
                )
            return rendered
        return await self.render(
            InlineContent(subject=content.subject, html=content.html, text=content.text),
            content.context,
        )

    async def send(self, email: OutgoingEmail) -> TransportResult:
        """Send with the configured timeout; transport exceptions become results."""
        if self.config.log_delivery_activity:
            self.logger.info("Attempting delivery to %s (subject=%r)", email.to, email.subject)
        try:
            async with asyncio.timeout(self.config.timing.send_timeout):
                return await self.transport.send(email)
        except TimeoutError:
            return TransportResult(success=False, error="transport timed out", error_code="timeout", retryable=True)
        except DeliveryError as exc:
            return TransportResult(
                success=False,
                error=str(exc),
                error_code=exc.code,
                retryable=isinstance(exc, TransientDeliveryError),
            )
        except OSError as exc:
            return TransportResult(success=False, error=str(exc), error_code=type(exc).__name__, retryable=True)
        except Exception as exc:
            self.logger.warning("Transport raised %s while sending to %s", type(exc).__name__, email.to, exc_info=True)
            return TransportResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                error_code=type(exc).__name__,
                retryable=True,
            )

    @staticmethod
    def build_email(payload: ImmediateJob | ScheduledJob, rendered: RenderedEmail, tags: dict[str, str]) -> OutgoingEmail:
        if isinstance(payload, ImmediateJob):
            reply_to, headers, extra_tags = payload.reply_to, payload.headers, payload.tags
        else:
            reply_to, headers, extra_tags = payload.content.reply_to, payload.content.headers, payload.content.tags
        all_tags = dict(extra_tags)
        all_tags.update({k: v for k, v in tags.items() if v is not None})
        return OutgoingEmail(
            to=payload.recipient,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            reply_to=reply_to,
            headers=dict(headers),
            tags=all_tags,
        )

    # ------------------------------------------------------------ state changes
    async def mark_sent(self, log_id: str, result: TransportResult, subject: str | None) -> bool:
        updated = await self.persistence.update_delivery_status(
            log_id,
            "sent",
            provider_message_id=result.provider_message_id,
            subject=subject,
        )
        if updated:
            self.metrics.inc_sent(self.kind)
        return updated

    async def mark_failed(self, log_id: str, error: str) -> bool:
        updated = await self.persistence.update_delivery_status(log_id, "failed", error_message=error)
        if updated:
            self.metrics.inc_failed(self.kind)
        return updated

    async def schedule_retry(
        self,
        *,
        log_id: str,
        payload: ImmediateJob | ScheduledJob,
        attempt_number: int,
        error: str,
    ) -> dict[str, Any]:
        """Enqueue ``RetryJob(attempt_number)`` after ``retry_delay(attempt_number - 1)``.

        The job is enqueued before the log is touched; a crash in between
        leaves at worst an extra retry bounded by the retry budget.
        """
        delay = retry_delay(attempt_number - 1)
        next_retry_at = self.clock() + delay
        await self.queue.enqueue(
            RetryJob(
                original_job_id=payload.job_id,
                delivery_log_id=log_id,
                attempt_number=attempt_number,
                original_payload=payload,
            ),
            delay_ms=int(delay.total_seconds() * 1000),
            priority=payload.priority,
        )
        await self.persistence.update_delivery_status(
            log_id, "pending", error_message=error, next_retry_at=next_retry_at
        )
        self.metrics.inc_retry()
        return self.event(
            "retry_scheduled",
            log_id,
            payload.recipient,
            error=error,
            attempt=attempt_number,
            retry_at=iso_z(next_retry_at),
            delay_minutes=int(delay / timedelta(minutes=1)),
        )

    # ------------------------------------------------------------------ events
    def event(self, status: str, log_id: str | None, recipient: str | None, **extra: Any) -> dict[str, Any]:
        event = {
            "id": log_id,
            "status": status,
            "kind": self.kind,
            "recipient": recipient,
            "timestamp": iso_z(self.clock()),
        }
        event.update(extra)
        self.log_delivery_event(event)
        return event

    def log_delivery_event(self, event: dict[str, Any]) -> None:
        """Log a processor outcome at a level matching its severity."""
        status = (event.get("status") or "unknown").lower()
        log_id = event.get("id") or "-"
        recipient = event.get("recipient") or "-"

        match status:
            case "sent":
                self.logger.info("Delivery succeeded for log %s (to=%s)", log_id, recipient)
            case "retry_scheduled":
                self.logger.warning(
                    "Transient failure for log %s (to=%s): %s - retry %s at %s",
                    log_id,
                    recipient,
                    event.get("error"),
                    event.get("attempt"),
                    event.get("retry_at"),
                )
            case "failed":
                self.logger.error(
                    "Delivery failed for log %s (to=%s): %s",
                    log_id,
                    recipient,
                    event.get("error") or "unknown error",
                )
            case "skipped" | "rescheduled" | "cancelled":
                self.logger.info(
                    "Delivery %s for %s (schedule=%s): %s",
                    status,
                    recipient,
                    event.get("schedule_id") or "-",
                    event.get("reason") or "-",
                )
            case "noop":
                self.logger.debug("Nothing to do for log %s: %s", log_id, event.get("reason") or "-")
            case _:
                self.logger.info("Delivery event for log %s: %s", log_id, status)
