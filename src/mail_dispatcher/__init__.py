# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transactional and scheduled email delivery engine.

This package turns a logical "send this email" intent into a durable,
retried, idempotent and policy-gated delivery attempt:

- Immediate sends with exponential-backoff retries
- One-shot and recurring scheduled sends with quiet-hours deferral
- A SQLite delivery log acting as the single source of truth per attempt
- Pluggable template renderer, transport client and preference gate
- Prometheus metrics for monitoring

Example:
    Wiring the dispatcher with the reference collaborators::

        from mail_dispatcher.core import MailDispatcher
        from mail_dispatcher.templates import TemplateRegistry
        from mail_dispatcher.transport import SmtpTransport

        dispatcher = MailDispatcher(
            db_path="/data/dispatcher.db",
            renderer=TemplateRegistry.with_defaults(),
            transport=SmtpTransport(host="smtp.example.com", port=587),
        )
        await dispatcher.start()
"""

__version__ = "0.3.0"
