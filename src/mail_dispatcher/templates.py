# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template rendering.

The processors depend on the :class:`TemplateRenderer` protocol only. The
reference :class:`TemplateRegistry` keeps templates in memory and fills
``{{key}}`` placeholders from the job context merged over a set of base
variables (application name, support address, current year, ...).

Placeholders without a value are left untouched so a missing variable is
visible in the delivered email instead of silently becoming empty.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from .errors import TemplateNotFound
from .models import InlineContent

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders with values from ``context``."""

    def _sub(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str | None = None
    text: str | None = None


@dataclass(frozen=True)
class EmailTemplate:
    """Raw template strings, each may contain ``{{key}}`` placeholders."""

    subject: str
    html: str | None = None
    text: str | None = None


class TemplateRenderer(Protocol):
    async def render(self, template_or_type: str | InlineContent, context: Mapping[str, Any]) -> RenderedEmail: ...


class TemplateRegistry:
    """In-memory template store implementing :class:`TemplateRenderer`.

    Example:
        ::

            registry = TemplateRegistry(base_variables={"app_name": "Acme"})
            registry.register("ping", EmailTemplate(subject="Ping from {{app_name}}", text="Hi {{name}}"))
            rendered = await registry.render("ping", {"name": "Ada"})
    """

    def __init__(self, base_variables: Mapping[str, Any] | None = None):
        self._templates: dict[str, EmailTemplate] = {}
        self.base_variables: dict[str, Any] = {
            "app_name": "Mail Dispatcher",
            "app_url": "https://example.com",
            "support_email": "support@example.com",
        }
        self.base_variables.update(base_variables or {})

    def register(self, template_id: str, template: EmailTemplate) -> None:
        self._templates[template_id] = template

    def variables(self, context: Mapping[str, Any]) -> dict[str, Any]:
        values = dict(self.base_variables)
        values.setdefault("current_year", datetime.now(timezone.utc).year)
        values.setdefault(
            "unsubscribe_url",
            f"{values['app_url']}/unsubscribe?token={context.get('unsubscribe_token') or ''}",
        )
        values.update(context)
        return values

    async def render(self, template_or_type: str | InlineContent, context: Mapping[str, Any]) -> RenderedEmail:
        """Render a registered template, or interpolate inline content.

        Raises:
            TemplateNotFound: ``template_or_type`` names no registered template.
        """
        values = self.variables(context)
        if isinstance(template_or_type, InlineContent):
            source = EmailTemplate(
                subject=template_or_type.subject,
                html=template_or_type.html,
                text=template_or_type.text,
            )
        else:
            source = self._templates.get(template_or_type)
            if source is None:
                raise TemplateNotFound(template_or_type)
        return RenderedEmail(
            subject=interpolate(source.subject, values),
            html=interpolate(source.html, values) if source.html else None,
            text=interpolate(source.text, values) if source.text else None,
        )

    @classmethod
    def with_defaults(cls, base_variables: Mapping[str, Any] | None = None) -> TemplateRegistry:
        """Registry preloaded with the built-in transactional templates."""
        registry = cls(base_variables)
        for template_id, template in DEFAULT_TEMPLATES.items():
            registry.register(template_id, template)
        return registry


def _html(body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
        f"{body}"
        "<hr><p style=\"font-size:12px;color:#777\">&copy; {{current_year}} {{app_name}} &middot; "
        "<a href=\"{{unsubscribe_url}}\">Unsubscribe</a></p>"
        "</body></html>"
    )


DEFAULT_TEMPLATES: dict[str, EmailTemplate] = {
    "welcome": EmailTemplate(
        subject="Welcome to {{app_name}}!",
        html=_html(
            "<h1>Welcome to {{app_name}}</h1>"
            "<p>Hi {{user_name}},</p>"
            "<p>Your account is ready. Start at <a href=\"{{app_url}}\">{{app_url}}</a>.</p>"
            "<p>Questions? Write to {{support_email}}.</p>"
        ),
        text=(
            "Hi {{user_name}},\n\nWelcome to {{app_name}}! Your account is ready: {{app_url}}\n\n"
            "Questions? Write to {{support_email}}."
        ),
    ),
    "verification": EmailTemplate(
        subject="Verify your email address",
        html=_html(
            "<p>Hi {{user_name}},</p>"
            "<p>Please confirm your address: <a href=\"{{verification_url}}\">verify email</a>.</p>"
        ),
        text="Hi {{user_name}},\n\nPlease confirm your address: {{verification_url}}",
    ),
    "password_reset": EmailTemplate(
        subject="Reset your {{app_name}} password",
        html=_html(
            "<p>Hi {{user_name}},</p>"
            "<p>Use <a href=\"{{reset_url}}\">this link</a> to choose a new password. "
            "If you did not ask for it, ignore this email.</p>"
        ),
        text="Hi {{user_name}},\n\nReset your password: {{reset_url}}\n\nIf you did not ask for it, ignore this email.",
    ),
    "reminder": EmailTemplate(
        subject="Reminder: {{title}}",
        html=_html("<p>Hi {{user_name}},</p><p>This is a reminder for <strong>{{title}}</strong> ({{due}}).</p>"),
        text="Hi {{user_name}},\n\nThis is a reminder for {{title}} ({{due}}).",
    ),
    "weekly_digest": EmailTemplate(
        subject="Your weekly summary from {{app_name}}",
        html=_html("<p>Hi {{user_name}},</p><p>{{summary}}</p>"),
        text="Hi {{user_name}},\n\n{{summary}}",
    ),
}
