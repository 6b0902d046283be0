# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Re-attempts of a pending delivery log."""

from __future__ import annotations

from typing import Any

from ..errors import PermanentDeliveryError, TransientDeliveryError
from ..models import DeliveryStatus, ImmediateJob, RetryJob
from .base import MAX_RETRIES_EXCEEDED, BaseProcessor


class RetryProcessor(BaseProcessor):
    """Handle a :class:`RetryJob`.

    The delivery log is re-read first and is authoritative: a log that is
    missing, already sent/delivered or already failed turns the job into a
    no-op, and the retry budget comes from the log, not from the payload.
    """

    kind = "retry"
    logger_name = "RetryProcessor"

    async def process(self, job: RetryJob) -> dict[str, Any]:
        recipient = job.original_payload.recipient
        log = await self.persistence.get_delivery_log(job.delivery_log_id)
        if log is None:
            self.logger.warning(
                "Delivery log %s not found for retry of job %s", job.delivery_log_id, job.original_job_id
            )
            return self.event("noop", job.delivery_log_id, recipient, reason="delivery log not found")
        if log.is_terminal_success:
            return self.event("noop", log.id, recipient, reason=f"already {log.status.value}")
        if log.status == DeliveryStatus.FAILED:
            return self.event("noop", log.id, recipient, reason="already failed")

        if log.retry_count >= job.attempt_number:
            if log.retry_count > job.attempt_number or log.next_retry_at is not None:
                return self.event("noop", log.id, recipient, reason="stale retry attempt", attempt=job.attempt_number)
            # claimed by a run that stopped before scheduling the next attempt
            self.logger.info("Resuming retry attempt %d of log %s", job.attempt_number, log.id)
        elif log.retry_count >= log.max_retries:
            await self.mark_failed(log.id, MAX_RETRIES_EXCEEDED)
            return self.event("failed", log.id, recipient, error=MAX_RETRIES_EXCEEDED, attempt=job.attempt_number)
        elif not await self.persistence.increment_retry_count(log.id, expected=log.retry_count):
            current = await self.persistence.get_delivery_log(log.id)
            if current is None or current.status != DeliveryStatus.PENDING:
                return self.event("noop", log.id, recipient, reason="already handled")
            if current.retry_count != log.retry_count:
                return self.event("noop", log.id, recipient, reason="stale retry attempt", attempt=job.attempt_number)
            await self.mark_failed(log.id, MAX_RETRIES_EXCEEDED)
            return self.event("failed", log.id, recipient, error=MAX_RETRIES_EXCEEDED, attempt=job.attempt_number)

        payload = job.original_payload
        try:
            rendered = await self.render_payload(payload)
        except PermanentDeliveryError as exc:
            await self.mark_failed(log.id, str(exc))
            self.event("failed", log.id, recipient, error=str(exc), error_code=exc.code)
            raise
        except TransientDeliveryError as exc:
            return await self._transient(job, log.id, log.max_retries, str(exc))

        tags = {
            "email_type": log.email_type,
            "user_id": payload.user_id,
            "retry_attempt": str(job.attempt_number),
        }
        if not isinstance(payload, ImmediateJob):
            tags["schedule_id"] = payload.schedule_id
        result = await self.send(self.build_email(payload, rendered, tags))
        if result.success:
            await self.mark_sent(log.id, result, rendered.subject)
            return self.event(
                "sent",
                log.id,
                recipient,
                provider_message_id=result.provider_message_id,
                attempt=job.attempt_number,
            )

        error = result.error or "send failed"
        if result.retryable:
            return await self._transient(job, log.id, log.max_retries, error)

        await self.mark_failed(log.id, error)
        self.event("failed", log.id, recipient, error=error, error_code=result.error_code)
        raise PermanentDeliveryError(error, code=result.error_code)

    async def _transient(self, job: RetryJob, log_id: str, max_retries: int, error: str) -> dict[str, Any]:
        if job.attempt_number < max_retries:
            return await self.schedule_retry(
                log_id=log_id,
                payload=job.original_payload,
                attempt_number=job.attempt_number + 1,
                error=error,
            )
        await self.mark_failed(log_id, error)
        return self.event(
            "failed",
            log_id,
            job.original_payload.recipient,
            error=error,
            attempt=job.attempt_number,
            reason=MAX_RETRIES_EXCEEDED,
        )
