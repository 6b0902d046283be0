# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduled and recurring sends.

One job is one occurrence. Handling an occurrence goes through three steps:

1. Recipient preferences, in this order: opt-out and disabled categories,
   unread emails (when ``skip_if_unread``), quiet hours.
2. Delivery: create the occurrence's log (keyed ``schedule_id@scheduled_at``),
   render and send. A failed send is final for that occurrence.
3. Recurrence: enqueue the next occurrence unless the rule is exhausted.

Quiet hours and cancellation on unsubscribe end the handling before step 3:
the former re-enqueues the same occurrence for later, the latter stops the
schedule for good.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from ..errors import DeliveryError, PermanentDeliveryError
from ..models import ScheduledJob
from ..preferences import BlockReason, PolicyDecision, PreferenceGate, bypasses_quiet_hours
from ..recurrence import next_occurrence, past_end_date
from .base import BaseProcessor, delay_ms_until, iso_z


class ScheduledProcessor(BaseProcessor):
    """Handle a :class:`ScheduledJob`.

    Args:
        gate: Recipient preference gate. Every keyword accepted by
            :class:`BaseProcessor` is accepted too.
    """

    kind = "scheduled"
    logger_name = "ScheduledProcessor"

    def __init__(self, *, gate: PreferenceGate, **kwargs: Any):
        super().__init__(**kwargs)
        self.gate = gate

    async def process(self, job: ScheduledJob) -> dict[str, Any]:
        await self.persistence.ensure_schedule(job.schedule_id, job.recipient)
        if await self.persistence.is_schedule_cancelled(job.schedule_id):
            return self.event("noop", None, job.recipient, schedule_id=job.schedule_id, reason="schedule cancelled")

        now = self.clock()
        decision = await self._check_preferences(job, now)

        if decision.allowed:
            outcome = await self._deliver(job)
        elif decision.reason == BlockReason.QUIET_HOURS:
            return await self._reschedule(job, decision.next_allowed or now, now)
        elif decision.reason == BlockReason.UNSUBSCRIBED and job.cancel_on_unsubscribe and job.is_recurring:
            await self.persistence.cancel_schedule(job.schedule_id, reason=BlockReason.UNSUBSCRIBED.value)
            return self.event(
                "cancelled",
                None,
                job.recipient,
                schedule_id=job.schedule_id,
                reason=decision.detail or decision.reason.value,
            )
        else:
            self.metrics.inc_skipped(decision.reason.value if decision.reason else "unknown")
            outcome = self.event(
                "skipped",
                None,
                job.recipient,
                schedule_id=job.schedule_id,
                reason=decision.detail or (decision.reason.value if decision.reason else None),
            )

        if job.is_recurring:
            next_at = await self._schedule_next(job, now)
            outcome["next_occurrence"] = iso_z(next_at) if next_at else None
        return outcome

    # -------------------------------------------------------------- preferences
    async def _check_preferences(self, job: ScheduledJob, now: datetime) -> PolicyDecision:
        """Evaluate the gate; a gate error lets the email through."""
        try:
            decision = await self.gate.is_allowed(job.recipient, job.content.categories)
            if not decision.allowed:
                return decision
            if job.skip_if_unread and await self.gate.has_unread_emails(job.recipient):
                return PolicyDecision.block(BlockReason.UNREAD, "recipient has unread emails")
            if not bypasses_quiet_hours(job.priority, job.content.categories) and await self.gate.is_quiet_hours(
                job.recipient, now
            ):
                next_allowed = await self.gate.get_next_allowed_time(job.recipient, now)
                if next_allowed > now:
                    return PolicyDecision.block(BlockReason.QUIET_HOURS, "quiet hours", next_allowed=next_allowed)
        except Exception:
            self.logger.warning(
                "Preference check failed for %s (schedule=%s), allowing send",
                job.recipient,
                job.schedule_id,
                exc_info=True,
            )
        return PolicyDecision.allow()

    async def _reschedule(self, job: ScheduledJob, when: datetime, now: datetime) -> dict[str, Any]:
        # same occurrence (same scheduled_at, same idempotency key), only later
        await self.queue.enqueue(
            job.model_copy(update={"job_id": uuid4().hex}),
            delay_ms=delay_ms_until(when, now),
            priority=job.priority,
        )
        self.metrics.inc_rescheduled()
        return self.event(
            "rescheduled",
            None,
            job.recipient,
            schedule_id=job.schedule_id,
            reason="quiet hours",
            retry_at=iso_z(when),
        )

    # ----------------------------------------------------------------- delivery
    async def _deliver(self, job: ScheduledJob) -> dict[str, Any]:
        content = job.content
        log_id = await self.persistence.create_delivery_log(
            idempotency_key=job.occurrence_key,
            recipient_email=job.recipient,
            user_id=job.user_id,
            schedule_id=job.schedule_id,
            email_type="scheduled",
            template_used=content.template or "inline",
            subject=content.subject or None,
            max_retries=job.max_retries,
            priority=job.priority,
        )
        log = await self.persistence.get_delivery_log(log_id)
        if log is None or log.is_terminal:
            return self.event("noop", log_id, job.recipient, schedule_id=job.schedule_id, reason="occurrence already handled")
        if log.next_retry_at is not None or log.retry_count > 0:
            return self.event("noop", log_id, job.recipient, schedule_id=job.schedule_id, reason="retry already scheduled")

        try:
            self.validate_recipient(job.recipient)
            rendered = await self.render_payload(job)
        except DeliveryError as exc:
            return await self._failed(job, log_id, str(exc), exc.code, retryable=not isinstance(exc, PermanentDeliveryError))

        tags = {
            "schedule_id": job.schedule_id,
            "user_id": job.user_id,
            "email_type": "scheduled",
            "schedule_type": job.schedule_type.value,
        }
        result = await self.send(self.build_email(job, rendered, tags))
        if result.success:
            await self.mark_sent(log_id, result, rendered.subject)
            await self.persistence.increment_schedule_occurrences(job.schedule_id)
            return self.event(
                "sent",
                log_id,
                job.recipient,
                schedule_id=job.schedule_id,
                provider_message_id=result.provider_message_id,
            )
        return await self._failed(job, log_id, result.error or "send failed", result.error_code, result.retryable)

    async def _failed(
        self, job: ScheduledJob, log_id: str, error: str, error_code: str | None, retryable: bool
    ) -> dict[str, Any]:
        if retryable and self.config.retry.retry_scheduled_failures and job.max_retries > 0:
            return await self.schedule_retry(log_id=log_id, payload=job, attempt_number=1, error=error)
        await self.mark_failed(log_id, error)
        return self.event("failed", log_id, job.recipient, schedule_id=job.schedule_id, error=error, error_code=error_code)

    # --------------------------------------------------------------- recurrence
    async def _schedule_next(self, job: ScheduledJob, now: datetime) -> datetime | None:
        rule = job.recurrence_rule
        if rule is None:
            return None
        next_at = next_occurrence(job.scheduled_at, rule, job.timezone)
        if next_at is None:
            self.logger.info("No more occurrences for schedule %s", job.schedule_id)
            return None
        if past_end_date(next_at, rule):
            self.logger.info("Schedule %s reached its end date", job.schedule_id)
            return None

        next_ts = int(next_at.timestamp())
        schedule = await self.persistence.get_schedule(job.schedule_id)
        if schedule and (schedule.get("next_occurrence_ts") or 0) >= next_ts:
            self.logger.debug("Occurrence %s of schedule %s already enqueued", iso_z(next_at), job.schedule_id)
            return next_at

        await self.queue.enqueue(
            job.model_copy(update={"job_id": uuid4().hex, "scheduled_at": next_at}),
            delay_ms=delay_ms_until(next_at, now),
            priority=job.priority,
        )
        await self.persistence.record_next_occurrence(job.schedule_id, next_ts)
        self.logger.debug("Scheduled next occurrence of %s at %s", job.schedule_id, iso_z(next_at))
        return next_at
