from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from TelegramRelay.collection.types import RelayEvent
from TelegramRelay.logging_setup import bind_log_context, log_event, run_in_thread
from TelegramRelay.observability_metrics import relay_events_relayed_total, webhook_attempts_total, webhook_deliveries_total
from shared.exceptions import DeliveryError
from shared.observability import swallow_exception

logger = logging.getLogger("delivery.policy")

Sleep = Callable[[float], Awaitable[Any]]

_TEXT_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: float = 1.0
    max_sleep_seconds: float = 30.0

    @classmethod
    def from_config(cls, cfg: Any) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(getattr(cfg, "webhook_max_attempts", 3) or 1)),
            base_seconds=max(0.0, float(getattr(cfg, "webhook_retry_base_seconds", 1.0) or 0.0)),
            max_sleep_seconds=max(0.0, float(getattr(cfg, "webhook_retry_max_sleep_seconds", 30.0) or 0.0)),
        )

    def backoff_seconds(self, attempt: int) -> float:
        wait_s = min(self.max_sleep_seconds, self.base_seconds * (2 ** (attempt - 1)))
        jitter = random.uniform(0.0, min(1.0, wait_s * 0.1))
        return min(self.max_sleep_seconds, wait_s + jitter)


def classify_delivery_error(err: DeliveryError) -> str:
    code = err.status_code
    if code is None:
        msg = str(err).lower()
        if "timeout" in msg or "timed out" in msg:
            return "timeout"
        return "connection"
    if code == 429:
        return "rate_limited"
    if code >= 500:
        return "webhook_5xx"
    return "webhook_4xx"


class DeliverySink:
    """
    Delivery entry point shared by the live and backfill streams.

    Runs the blocking dispatcher in a worker thread, retries transient failures
    (network errors, 5xx, 429) with exponential backoff, and treats other 4xx as
    permanent. A failed event is logged and dropped; `__call__` never raises
    DeliveryError, so one bad delivery cannot stop the next event.
    """

    def __init__(
        self,
        dispatcher: Any,
        *,
        policy: Optional[RetryPolicy] = None,
        log_text: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.policy = policy or RetryPolicy()
        self.log_text = bool(log_text)
        self._sleep = sleep

    async def __call__(self, event: RelayEvent) -> bool:
        with bind_log_context(message_id=event.message_id):
            last_error: Optional[DeliveryError] = None
            for attempt in range(1, self.policy.max_attempts + 1):
                try:
                    await run_in_thread(self.dispatcher.deliver, event)
                except DeliveryError as e:
                    last_error = e
                    reason = classify_delivery_error(e)
                    self._count_attempt(reason)
                    if not e.retryable or attempt >= self.policy.max_attempts:
                        break
                    wait_s = self.policy.backoff_seconds(attempt)
                    log_event(
                        logger,
                        logging.WARNING,
                        "webhook_retry",
                        attempt=attempt,
                        wait_s=round(wait_s, 2),
                        reason=reason,
                        status_code=e.status_code,
                    )
                    await self._sleep(wait_s)
                    continue

                self._count_attempt("ok")
                self._count_delivery(event, "ok")
                fields = {"type": event.wire_type, "attempts": attempt}
                if self.log_text:
                    fields["text"] = event.text[:_TEXT_PREVIEW_CHARS]
                log_event(logger, logging.INFO, "webhook_delivered", **fields)
                return True

            self._count_delivery(event, "failed")
            log_event(
                logger,
                logging.ERROR,
                "webhook_delivery_failed",
                type=event.wire_type,
                reason=classify_delivery_error(last_error) if last_error else "unknown",
                status_code=last_error.status_code if last_error else None,
                error=str(last_error) if last_error else None,
            )
            return False

    @staticmethod
    def _count_attempt(reason: str) -> None:
        try:
            webhook_attempts_total.labels(reason=reason).inc()
        except Exception as e:
            swallow_exception(e, context="metrics_webhook_attempts")

    @staticmethod
    def _count_delivery(event: RelayEvent, outcome: str) -> None:
        try:
            webhook_deliveries_total.labels(kind=event.kind.value, outcome=outcome).inc()
            if outcome == "ok":
                relay_events_relayed_total.labels(kind=event.kind.value).inc()
        except Exception as e:
            swallow_exception(e, context="metrics_webhook_deliveries")
