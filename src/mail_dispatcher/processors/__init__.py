# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Job processors, one per job kind."""

from .base import BaseProcessor
from .dispatch import DispatchProcessor
from .retry import RetryProcessor
from .scheduled import ScheduledProcessor

__all__ = ["BaseProcessor", "DispatchProcessor", "RetryProcessor", "ScheduledProcessor"]
