"""Tests for Pydantic models and validators."""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from mail_dispatcher.models import (
    DeliveryLog,
    DeliveryStatus,
    ImmediateJob,
    InlineContent,
    RecurrenceRule,
    RetryJob,
    ScheduledJob,
    Weekday,
    dump_job,
    parse_job,
)


class TestImmediateJob:
    def test_defaults(self):
        job = ImmediateJob(recipient="ada@example.com", template_or_content="welcome")
        assert len(job.job_id) == 32
        assert job.priority == 50
        assert job.max_retries == 3
        assert job.template_used == "welcome"

    @pytest.mark.parametrize("label, value", [("low", 25), ("Normal", 50), ("high", 75), ("urgent", 100), (None, 50)])
    def test_priority_labels(self, label, value):
        job = ImmediateJob(recipient="ada@example.com", template_or_content="welcome", priority=label)
        assert job.priority == value

    def test_priority_out_of_range(self):
        with pytest.raises(ValidationError):
            ImmediateJob(recipient="ada@example.com", template_or_content="welcome", priority=101)
        with pytest.raises(ValidationError):
            ImmediateJob(recipient="ada@example.com", template_or_content="welcome", priority="asap")

    def test_inline_content(self):
        job = ImmediateJob(recipient="ada@example.com", template_or_content={"subject": "Hi", "text": "Body"})
        assert isinstance(job.template_or_content, InlineContent)
        assert job.template_used == "inline"

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            ImmediateJob(recipient="ada@example.com", template_or_content="welcome", cc="x@example.com")


class TestScheduledJob:
    def test_naive_scheduled_at_is_utc(self):
        job = ScheduledJob(
            schedule_id="s1",
            recipient="ada@example.com",
            content={"template": "reminder"},
            scheduled_at=datetime(2025, 1, 1, 9, 0),
        )
        assert job.scheduled_at.tzinfo == timezone.utc
        assert job.occurrence_key == "s1@2025-01-01T09:00:00+00:00"
        assert job.is_recurring is False

    def test_recurring_requires_rule(self):
        with pytest.raises(ValidationError):
            ScheduledJob(
                schedule_id="s1",
                recipient="ada@example.com",
                content={"template": "reminder"},
                scheduled_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
                schedule_type="recurring",
            )

    def test_content_needs_template_or_subject(self):
        with pytest.raises(ValidationError):
            ScheduledJob(
                schedule_id="s1",
                recipient="ada@example.com",
                content={"text": "orphan body"},
                scheduled_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_unknown_timezone(self):
        with pytest.raises(ValidationError):
            ScheduledJob(
                schedule_id="s1",
                recipient="ada@example.com",
                content={"template": "reminder"},
                scheduled_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
                timezone="Mars/Olympus",
            )

    def test_weekday_rule(self):
        rule = RecurrenceRule(pattern="weekly", days_of_week=[0, 4])
        assert rule.days_of_week == [Weekday.MONDAY, Weekday.FRIDAY]
        with pytest.raises(ValidationError):
            RecurrenceRule(pattern="weekly", days_of_week=[7])
        with pytest.raises(ValidationError):
            RecurrenceRule(pattern="daily", interval=0)


class TestJobUnion:
    def test_parse_dispatches_on_kind(self):
        immediate = parse_job({"kind": "immediate", "recipient": "a@example.com", "template_or_content": "welcome"})
        assert isinstance(immediate, ImmediateJob)

        retry = RetryJob(
            original_job_id=immediate.job_id,
            delivery_log_id="log-1",
            attempt_number=2,
            original_payload=immediate,
        )
        restored = parse_job(dump_job(retry))
        assert isinstance(restored, RetryJob)
        assert isinstance(restored.original_payload, ImmediateJob)
        assert restored.original_payload.job_id == immediate.job_id

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            parse_job(json.dumps({"kind": "carrier_pigeon", "recipient": "a@example.com"}))


class TestDeliveryLog:
    def test_terminal_flags(self):
        log = DeliveryLog(id="1", recipient_email="a@example.com")
        assert log.status == DeliveryStatus.PENDING
        assert not log.is_terminal
        assert DeliveryLog(id="1", recipient_email="a@example.com", status="delivered").is_terminal_success
        failed = DeliveryLog(id="1", recipient_email="a@example.com", status="failed")
        assert failed.is_terminal and not failed.is_terminal_success
