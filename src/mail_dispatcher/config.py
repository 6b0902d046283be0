# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and INI/environment loading.

Provides a nested configuration structure:
- config.timing.render_timeout
- config.retry.max_retries
- config.smtp.host

Values are read from an INI file (``MDS_CONFIG``, default ``config.ini``)
with ``MDS_*`` environment variables as fallbacks.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class TimingConfig:
    """Timing and interval settings."""

    poll_interval: float = 0.5
    """Seconds between queue polls when no job is ready."""

    render_timeout: float = 10.0
    """Timeout in seconds for a template render call."""

    send_timeout: float = 30.0
    """Timeout in seconds for a transport send call."""

    lease_seconds: int = 300
    """How long a reserved job stays invisible to other workers."""

    redelivery_delay_seconds: int = 30
    """Delay before a job that crashed its processor becomes visible again."""

    log_retention_days: int = 90
    """Age after which delivery logs can be purged."""


@dataclass
class RetryConfig:
    """Retry behavior settings."""

    default_max_retries: int = 3
    """Retry budget for jobs that do not carry their own."""

    retry_scheduled_failures: bool = False
    """Route transient scheduled-send failures into the retry chain."""


@dataclass
class SmtpConfig:
    """SMTP transport settings."""

    host: str | None = None
    port: int = 587
    user: str | None = None
    password: str | None = None
    use_tls: bool | None = None
    sender: str = "noreply@localhost"
    pool_ttl: int = 300


@dataclass
class HttpTransportConfig:
    """JSON email API transport settings."""

    url: str | None = None
    token: str | None = None
    sender: str = "noreply@localhost"


@dataclass
class DispatcherConfig:
    """Main configuration container for the dispatcher.

    Example:
        config = DispatcherConfig(
            db_path="/data/dispatcher.db",
            retry=RetryConfig(default_max_retries=5),
        )
        dispatcher = MailDispatcher(config=config, ...)
    """

    db_path: str = "/data/mail_dispatcher.db"
    """SQLite database path for the delivery log and the job queue."""

    log_level: str = "INFO"
    log_delivery_activity: bool = False
    batch_size: int = 50
    """Maximum jobs reserved per poll."""

    timing: TimingConfig = field(default_factory=TimingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    http: HttpTransportConfig = field(default_factory=HttpTransportConfig)


def _parse_bool(value: str | None, default: bool | None) -> bool | None:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(config_path: str | None = None) -> DispatcherConfig:
    """Load configuration from an INI file with environment variables as fallbacks.

    Environment variables (all prefixed with MDS_):
      MDS_CONFIG - Path to config.ini file (default: config.ini)
      MDS_DB_PATH - Database path
      MDS_LOG_LEVEL - Logging level (default: INFO)
      MDS_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)
      MDS_BATCH_SIZE - Jobs reserved per poll (default: 50)
      MDS_POLL_INTERVAL - Seconds between idle polls
      MDS_RENDER_TIMEOUT / MDS_SEND_TIMEOUT - Collaborator timeouts in seconds
      MDS_MAX_RETRIES - Default retry budget (default: 3)
      MDS_RETRY_SCHEDULED_FAILURES - Retry transient scheduled failures (default: False)
      MDS_SMTP_HOST, MDS_SMTP_PORT, MDS_SMTP_USER, MDS_SMTP_PASSWORD, MDS_SMTP_TLS, MDS_SMTP_SENDER
      MDS_HTTP_URL, MDS_HTTP_TOKEN, MDS_HTTP_SENDER

    Config file sections/keys:
      [storage] db_path
      [logging] level, delivery_activity
      [worker] batch_size, poll_interval, lease_seconds, redelivery_delay_seconds
      [timeouts] render, send
      [retry] max_retries, retry_scheduled_failures
      [smtp] host, port, user, password, use_tls, sender, pool_ttl
      [http] url, token, sender
      [retention] log_days
    """
    path = Path(config_path or os.getenv("MDS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env, fallback)

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value is None else int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value is None else float(value)

    defaults = DispatcherConfig()
    timing = TimingConfig(
        poll_interval=get_float("worker", "poll_interval", "MDS_POLL_INTERVAL", defaults.timing.poll_interval),
        render_timeout=get_float("timeouts", "render", "MDS_RENDER_TIMEOUT", defaults.timing.render_timeout),
        send_timeout=get_float("timeouts", "send", "MDS_SEND_TIMEOUT", defaults.timing.send_timeout),
        lease_seconds=get_int("worker", "lease_seconds", "MDS_LEASE_SECONDS", defaults.timing.lease_seconds),
        redelivery_delay_seconds=get_int(
            "worker",
            "redelivery_delay_seconds",
            "MDS_REDELIVERY_DELAY_SECONDS",
            defaults.timing.redelivery_delay_seconds,
        ),
        log_retention_days=get_int("retention", "log_days", "MDS_LOG_RETENTION_DAYS", defaults.timing.log_retention_days),
    )
    retry = RetryConfig(
        default_max_retries=get_int("retry", "max_retries", "MDS_MAX_RETRIES", defaults.retry.default_max_retries),
        retry_scheduled_failures=bool(
            _parse_bool(get("retry", "retry_scheduled_failures", "MDS_RETRY_SCHEDULED_FAILURES"), False)
        ),
    )
    smtp = SmtpConfig(
        host=get("smtp", "host", "MDS_SMTP_HOST"),
        port=get_int("smtp", "port", "MDS_SMTP_PORT", defaults.smtp.port),
        user=get("smtp", "user", "MDS_SMTP_USER"),
        password=get("smtp", "password", "MDS_SMTP_PASSWORD"),
        use_tls=_parse_bool(get("smtp", "use_tls", "MDS_SMTP_TLS"), None),
        sender=get("smtp", "sender", "MDS_SMTP_SENDER", defaults.smtp.sender) or defaults.smtp.sender,
        pool_ttl=get_int("smtp", "pool_ttl", "MDS_SMTP_POOL_TTL", defaults.smtp.pool_ttl),
    )
    http = HttpTransportConfig(
        url=get("http", "url", "MDS_HTTP_URL"),
        token=get("http", "token", "MDS_HTTP_TOKEN"),
        sender=get("http", "sender", "MDS_HTTP_SENDER", defaults.http.sender) or defaults.http.sender,
    )

    db_path = get("storage", "db_path", "MDS_DB_PATH", defaults.db_path) or defaults.db_path
    return DispatcherConfig(
        db_path=os.path.expanduser(db_path),
        log_level=(get("logging", "level", "MDS_LOG_LEVEL", "INFO") or "INFO").upper(),
        log_delivery_activity=bool(
            _parse_bool(get("logging", "delivery_activity", "MDS_LOG_DELIVERY_ACTIVITY"), False)
        ),
        batch_size=max(1, get_int("worker", "batch_size", "MDS_BATCH_SIZE", defaults.batch_size)),
        timing=timing,
        retry=retry,
        smtp=smtp,
        http=http,
    )
