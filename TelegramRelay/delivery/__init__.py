from __future__ import annotations

from .policy import DeliverySink, RetryPolicy
from .webhook import WebhookDispatcher, build_payload

__all__ = ["DeliverySink", "RetryPolicy", "WebhookDispatcher", "build_payload"]
