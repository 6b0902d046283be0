# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""First attempt of an immediate send."""

from __future__ import annotations

from typing import Any

from ..errors import PermanentDeliveryError, TransientDeliveryError
from ..models import ImmediateJob
from .base import MAX_RETRIES_EXCEEDED, BaseProcessor


class DispatchProcessor(BaseProcessor):
    """Handle an :class:`ImmediateJob`.

    Creates (or, on redelivery, finds) the delivery log keyed by ``job_id``,
    renders and sends. A transient failure leaves the log pending and hands
    the chain over to the retry processor with ``attempt_number=1``; a
    permanent one fails the log and raises.
    """

    kind = "immediate"
    logger_name = "DispatchProcessor"

    async def process(self, job: ImmediateJob) -> dict[str, Any]:
        log_id = await self.persistence.create_delivery_log(
            idempotency_key=job.job_id,
            recipient_email=job.recipient,
            user_id=job.user_id,
            email_type=job.categories[0] if job.categories else "transactional",
            template_used=job.template_used,
            max_retries=job.max_retries,
            priority=job.priority,
        )
        log = await self.persistence.get_delivery_log(log_id)
        if log is None or log.is_terminal:
            return self.event("noop", log_id, job.recipient, reason="delivery already completed")
        if log.next_retry_at is not None or log.retry_count > 0:
            # a retry job owns this chain already
            return self.event("noop", log_id, job.recipient, reason="retry already scheduled")

        try:
            self.validate_recipient(job.recipient)
            rendered = await self.render_payload(job)
        except PermanentDeliveryError as exc:
            await self.mark_failed(log_id, str(exc))
            self.event("failed", log_id, job.recipient, error=str(exc), error_code=exc.code)
            raise
        except TransientDeliveryError as exc:
            return await self._transient(log_id, log.max_retries, job, str(exc))

        email = self.build_email(
            job,
            rendered,
            {"email_type": log.email_type, "user_id": job.user_id, "job_id": job.job_id},
        )
        result = await self.send(email)
        if result.success:
            await self.mark_sent(log_id, result, rendered.subject)
            return self.event("sent", log_id, job.recipient, provider_message_id=result.provider_message_id)

        error = result.error or "send failed"
        if result.retryable:
            return await self._transient(log_id, log.max_retries, job, error)

        await self.mark_failed(log_id, error)
        self.event("failed", log_id, job.recipient, error=error, error_code=result.error_code)
        raise PermanentDeliveryError(error, code=result.error_code)

    async def _transient(self, log_id: str, max_retries: int, job: ImmediateJob, error: str) -> dict[str, Any]:
        if max_retries <= 0:
            # no retry budget: the first transient failure is final
            await self.mark_failed(log_id, error)
            return self.event("failed", log_id, job.recipient, error=error, reason=MAX_RETRIES_EXCEEDED)
        return await self.schedule_retry(log_id=log_id, payload=job, attempt_number=1, error=error)
