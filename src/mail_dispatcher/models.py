# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for jobs, recurrence rules and delivery logs.

Job payloads form a tagged union discriminated by ``kind``:

    - ImmediateJob: send now, retry with backoff on transient failure
    - RetryJob: re-attempt a pending delivery log
    - ScheduledJob: send at a given time, possibly recurring

Adding a new job kind means adding a model here and one case arm in
``MailDispatcher.handle_job``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

PRIORITY_LABELS = {
    "low": 25,
    "normal": 50,
    "high": 75,
    "urgent": 100,
}
DEFAULT_PRIORITY = 50
DEFAULT_MAX_RETRIES = 3


class DeliveryStatus(str, Enum):
    """Lifecycle states of a delivery log.

    Attributes:
        PENDING: Created, not yet in a terminal state.
        SENT: Accepted by the transport (terminal success).
        DELIVERED: Confirmed by the provider; only set by the external signal.
        FAILED: Retries exhausted or permanent error (terminal failure).
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_SUCCESS = frozenset({DeliveryStatus.SENT, DeliveryStatus.DELIVERED})
TERMINAL = TERMINAL_SUCCESS | {DeliveryStatus.FAILED}


class ScheduleType(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(IntEnum):
    """Day of week, numbered like :meth:`datetime.date.weekday`."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalise_priority(value: Any) -> Any:
    """Accept ``low|normal|high|urgent`` labels as well as numbers."""
    if value is None:
        return DEFAULT_PRIORITY
    if isinstance(value, str):
        key = value.strip().lower()
        if key in PRIORITY_LABELS:
            return PRIORITY_LABELS[key]
    return value


def _new_job_id() -> str:
    return uuid4().hex


class RecurrenceRule(BaseModel):
    """Declarative description of how a schedule repeats.

    ``pattern`` is kept as a plain string so that rules written by newer
    producers still parse; unknown patterns end the recurrence.

    Attributes:
        pattern: One of daily, weekly, monthly, yearly.
        interval: Step between occurrences in units of the pattern.
        days_of_week: Weekdays for weekly rules (Monday=0).
        day_of_month: Day pinned by monthly rules.
        end_date: No occurrence is enqueued after this instant.
        max_occurrences: Stored for producers; not enforced.
    """

    model_config = ConfigDict(extra="forbid")

    pattern: Annotated[str, Field(description="daily | weekly | monthly | yearly")]
    interval: Annotated[int, Field(default=1, ge=1)]
    days_of_week: Annotated[list[Weekday] | None, Field(default=None)]
    day_of_month: Annotated[int | None, Field(default=None, ge=1, le=31)]
    end_date: Annotated[datetime | None, Field(default=None)]
    max_occurrences: Annotated[int | None, Field(default=None, ge=1)]

    @field_validator("end_date")
    @classmethod
    def end_date_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class InlineContent(BaseModel):
    """Pre-written email content sent instead of a named template."""

    model_config = ConfigDict(extra="forbid")

    subject: Annotated[str, Field(min_length=1)]
    html: str | None = None
    text: str | None = None


class ImmediateJob(BaseModel):
    """Send an email now.

    Attributes:
        job_id: Identifier of the logical send request; also the delivery
            log idempotency key, so a redelivered job reuses its log.
        recipient: Destination address.
        template_or_content: Template id or inline content.
        context: Values handed to the renderer.
        priority: 0-100, higher is more urgent.
        max_retries: Retry budget for the attempt chain.
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["immediate"] = "immediate"
    job_id: Annotated[str, Field(default_factory=_new_job_id)]
    recipient: Annotated[str, Field(min_length=1)]
    template_or_content: str | InlineContent
    context: dict[str, Any] = Field(default_factory=dict)
    priority: Annotated[int, Field(default=DEFAULT_PRIORITY, ge=0, le=100)]
    max_retries: Annotated[int, Field(default=DEFAULT_MAX_RETRIES, ge=0)]
    user_id: str | None = None
    categories: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    reply_to: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("priority", mode="before")
    @classmethod
    def priority_label(cls, v: Any) -> Any:
        return _normalise_priority(v)

    @property
    def template_used(self) -> str:
        if isinstance(self.template_or_content, str):
            return self.template_or_content
        return "inline"


class ScheduledContent(BaseModel):
    """Content of a scheduled email: a template, or inline text with ``{{key}}`` placeholders."""

    model_config = ConfigDict(extra="forbid")

    subject: Annotated[str, Field(default="")]
    html: str | None = None
    text: str | None = None
    template: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    categories: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    reply_to: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def content_present(self) -> ScheduledContent:
        if not self.template and not self.subject:
            raise ValueError("subject is required when no template is given")
        return self


class ScheduledJob(BaseModel):
    """Send an email at ``scheduled_at``, once or following a recurrence rule."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["scheduled"] = "scheduled"
    job_id: Annotated[str, Field(default_factory=_new_job_id)]
    schedule_id: Annotated[str, Field(min_length=1)]
    recipient: Annotated[str, Field(min_length=1)]
    content: ScheduledContent
    scheduled_at: datetime
    schedule_type: ScheduleType = ScheduleType.ONCE
    recurrence_rule: RecurrenceRule | None = None
    timezone: str = "UTC"
    cancel_on_unsubscribe: bool = False
    skip_if_unread: bool = False
    user_id: str | None = None
    priority: Annotated[int, Field(default=DEFAULT_PRIORITY, ge=0, le=100)]
    max_retries: Annotated[int, Field(default=DEFAULT_MAX_RETRIES, ge=0)]

    @field_validator("priority", mode="before")
    @classmethod
    def priority_label(cls, v: Any) -> Any:
        return _normalise_priority(v)

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{v}'") from exc
        return v

    @model_validator(mode="after")
    def recurring_needs_rule(self) -> ScheduledJob:
        if self.schedule_type == ScheduleType.RECURRING and self.recurrence_rule is None:
            raise ValueError("recurrence_rule is required for recurring schedules")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.schedule_type == ScheduleType.RECURRING and self.recurrence_rule is not None

    @property
    def occurrence_key(self) -> str:
        """Idempotency key of this occurrence's delivery log."""
        return f"{self.schedule_id}@{self.scheduled_at.isoformat()}"


class RetryJob(BaseModel):
    """Re-attempt delivery for an existing pending log."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["retry"] = "retry"
    job_id: Annotated[str, Field(default_factory=_new_job_id)]
    original_job_id: str
    delivery_log_id: str
    attempt_number: Annotated[int, Field(ge=1)]
    original_payload: Annotated[ImmediateJob | ScheduledJob, Field(discriminator="kind")]


EmailJob = Annotated[ImmediateJob | RetryJob | ScheduledJob, Field(discriminator="kind")]
EMAIL_JOB_ADAPTER: TypeAdapter[ImmediateJob | RetryJob | ScheduledJob] = TypeAdapter(EmailJob)


def parse_job(data: dict[str, Any] | str | bytes) -> ImmediateJob | RetryJob | ScheduledJob:
    """Validate a job payload (dict or JSON) into its typed model."""
    if isinstance(data, (str, bytes)):
        return EMAIL_JOB_ADAPTER.validate_json(data)
    return EMAIL_JOB_ADAPTER.validate_python(data)


def dump_job(job: ImmediateJob | RetryJob | ScheduledJob) -> str:
    """Serialize a job to JSON for the queue."""
    return job.model_dump_json()


class DeliveryLog(BaseModel):
    """Durable record of one attempt chain; the single source of truth for its outcome.

    Timestamps are stored as epoch seconds and exposed as aware datetimes.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str | None = None
    recipient_email: str
    schedule_id: str | None = None
    idempotency_key: str | None = None
    email_type: str = "transactional"
    template_used: str | None = None
    subject: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    priority: int = DEFAULT_PRIORITY
    provider_message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def is_terminal_success(self) -> bool:
        return self.status in TERMINAL_SUCCESS
