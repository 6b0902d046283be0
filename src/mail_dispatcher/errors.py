# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy for delivery attempts.

Permanent errors end an attempt chain immediately (the delivery log goes to
``failed`` and no retry is enqueued). Transient errors feed the backoff
sequence. Policy blocks (unsubscribe, disabled category, quiet hours) are not
errors and never raise.
"""


class DeliveryError(RuntimeError):
    """Base class for failures raised while delivering an email."""

    code = "delivery_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class PermanentDeliveryError(DeliveryError):
    """Failure that retrying cannot fix."""

    code = "permanent_failure"


class TransientDeliveryError(DeliveryError):
    """Failure expected to clear up on a later attempt (timeouts, 5xx, throttling)."""

    code = "transient_failure"


class TemplateNotFound(PermanentDeliveryError):
    """Raised by renderers for unknown template ids."""

    code = "template_not_found"

    def __init__(self, template_id: str):
        super().__init__(f"Template '{template_id}' not found")
        self.template_id = template_id


class InvalidRecipient(PermanentDeliveryError):
    """Raised when the recipient address cannot be used."""

    code = "invalid_recipient"

    def __init__(self, recipient: str):
        super().__init__(f"Malformed recipient address: {recipient!r}")
        self.recipient = recipient
