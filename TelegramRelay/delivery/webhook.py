from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from TelegramRelay.collection.types import RelayEvent
from TelegramRelay.logging_setup import log_event, timed
from TelegramRelay.observability_metrics import webhook_delivery_seconds
from shared.exceptions import DeliveryError
from shared.observability import swallow_exception

logger = logging.getLogger("delivery.webhook")

DEFAULT_TIMEOUT_SECONDS = 15.0


def build_payload(event: RelayEvent) -> Dict[str, str]:
    return event.to_payload()


class WebhookDispatcher:
    """
    Single-attempt webhook POST.

    Holds only the endpoint and timeout, so one instance can be shared by the live
    and backfill streams. Retries are the caller's job (see delivery.policy).
    """

    def __init__(self, url: str, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.url = str(url or "").strip()
        if not self.url:
            raise ValueError("webhook url is required")
        self.timeout_seconds = float(timeout_seconds)

    def deliver(self, event: RelayEvent) -> int:
        """POST `event`; returns the status code (always 200) or raises DeliveryError."""
        body = build_payload(event)
        t0 = timed()
        try:
            resp = requests.post(self.url, json=body, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise DeliveryError(f"webhook request failed: {e}") from e
        finally:
            self._observe(timed() - t0)

        try:
            if resp.status_code != 200:
                raise DeliveryError(f"unexpected status code: {resp.status_code}", status_code=int(resp.status_code))
            log_event(
                logger,
                logging.DEBUG,
                "webhook_post_ok",
                message_id=event.message_id,
                type=event.wire_type,
                status_code=resp.status_code,
                send_ms=round((timed() - t0) * 1000.0, 2),
            )
            return int(resp.status_code)
        finally:
            resp.close()

    @staticmethod
    def _observe(seconds: Any) -> None:
        try:
            webhook_delivery_seconds.observe(float(seconds))
        except Exception as e:
            swallow_exception(e, context="metrics_webhook_latency")
