"""
Relay orchestrator.

Owns one relay run: live handlers are registered, the session is authorized, the
watched channel is resolved, and then the live update loop runs with an optional
backfill task beside it. Both streams feed the same delivery sink.

States:
  BOOTSTRAPPING -> AUTH_PENDING -> RUNNING -> DRAINING -> STOPPED
  FAILED is reachable from every non-terminal state.

The two streams are independent: the same message id can reach the webhook once
as `newMessage`/`editMessage` and again as `oldMessage`. The consumer dedupes on
`external_id` + `type`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Optional

from TelegramRelay.collection.backfill import run_backfill
from TelegramRelay.collection.channels import resolve_watched_chat
from TelegramRelay.collection.classify import classify
from TelegramRelay.collection.counters import Counters
from TelegramRelay.collection.types import RawEvent, RelayEvent, RelayOptions, WatchedChat
from TelegramRelay.logging_setup import bind_log_context, log_event
from TelegramRelay.observability_metrics import backfill_runs_total, relay_events_seen_total, relay_state
from shared.exceptions import RelayError
from shared.observability import swallow_exception

logger = logging.getLogger("relay.orchestrator")

Sink = Callable[[RelayEvent], Awaitable[Any]]


class RelayState(str, enum.Enum):
    BOOTSTRAPPING = "bootstrapping"
    AUTH_PENDING = "auth_pending"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"
    FAILED = "failed"


_TERMINAL = {RelayState.STOPPED, RelayState.FAILED}


class RelayOrchestrator:
    def __init__(
        self,
        *,
        options: RelayOptions,
        gateway: Any,
        sink: Sink,
        authenticator: Callable[[Any], Awaitable[None]],
    ) -> None:
        self.options = options
        self.gateway = gateway
        self.sink = sink
        self.authenticator = authenticator
        self.state = RelayState.BOOTSTRAPPING
        self.watched: Optional[WatchedChat] = None
        self.me: Any = None
        self.live_counters = Counters()
        self.backfill_counters: Optional[Counters] = None
        self.backfill_error: Optional[BaseException] = None
        self._stop = asyncio.Event()
        self._live_lock = asyncio.Lock()
        self._backfill_task: Optional[asyncio.Task] = None
        self._disconnect_task: Optional[asyncio.Task] = None
        self._export_state()

    # -------------------------
    # State
    # -------------------------
    def _transition(self, new_state: RelayState, **data: Any) -> None:
        if self.state in _TERMINAL or self.state is new_state:
            return
        old = self.state
        self.state = new_state
        log_event(logger, logging.INFO, "relay_state", from_state=old.value, to_state=new_state.value, **data)
        self._export_state()

    def _export_state(self) -> None:
        try:
            for s in RelayState:
                relay_state.labels(state=s.value).set(1 if s is self.state else 0)
        except Exception as e:
            swallow_exception(e, context="metrics_relay_state")

    def health(self) -> tuple[bool, dict[str, Any]]:
        ok = self.state in {RelayState.BOOTSTRAPPING, RelayState.AUTH_PENDING, RelayState.RUNNING, RelayState.DRAINING}
        return ok, {
            "state": self.state.value,
            "watched_chat": self.watched.chat_id if self.watched else None,
            "backfill_running": bool(self._backfill_task and not self._backfill_task.done()),
        }

    # -------------------------
    # Live stream
    # -------------------------
    async def handle_live_event(self, raw: RawEvent) -> None:
        """Classify one live update and deliver it; failures stay inside this event."""
        counters = self.live_counters
        counters.seen += 1
        try:
            relay_events_seen_total.labels(source="live").inc()
        except Exception as e:
            swallow_exception(e, context="metrics_events_seen")

        watched = self.watched
        if watched is None:
            counters.skipped += 1
            log_event(logger, logging.DEBUG, "live_event_before_resolution", tag=raw.tag)
            return

        # Deliveries are serialized so a retrying event is never overtaken by a later one.
        async with self._live_lock:
            await self._deliver_live(raw, watched)

    async def _deliver_live(self, raw: RawEvent, watched: WatchedChat) -> None:
        counters = self.live_counters
        with bind_log_context(chat=watched.chat_id, source="live", step=f"live.{raw.tag}"):
            try:
                event = classify(raw, watched, text_case=self.options.text_case)
                if event is None:
                    counters.skipped += 1
                    return
                delivered = await self.sink(event)
                if delivered is False:
                    counters.failed += 1
                else:
                    counters.emitted += 1
                counters.last_message_id = event.message_id
            except Exception as e:
                counters.failed += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "live_event_failed",
                    tag=raw.tag,
                    message_id=getattr(raw.message, "id", None),
                    error=str(e),
                )

    # -------------------------
    # Backfill stream
    # -------------------------
    async def _refresh_watched(self) -> WatchedChat:
        self.watched = await resolve_watched_chat(
            self.gateway,
            self.options.watched_chat_id,
            timeout=self.options.request_timeout_seconds,
        )
        return self.watched

    async def _run_backfill(self, watched: WatchedChat) -> None:
        log_event(logger, logging.INFO, "backfill_start", page_size=self.options.page_size)
        try:
            self.backfill_counters = await run_backfill(
                gateway=self.gateway,
                watched=watched,
                page_size=self.options.page_size,
                emit=self.sink,
                stop=self._stop,
                refresh=self._refresh_watched,
                text_case=self.options.text_case,
            )
            outcome = "cancelled" if self.backfill_counters.cancelled else "ok"
        except asyncio.CancelledError:
            log_event(logger, logging.INFO, "backfill_cancelled_mid_page")
            outcome = "cancelled"
            raise
        except Exception as e:
            self.backfill_error = e
            outcome = "failed"
            log_event(logger, logging.ERROR, "backfill_failed", error=str(e), error_type=type(e).__name__)
        finally:
            try:
                backfill_runs_total.labels(outcome=outcome).inc()
            except Exception as e:
                swallow_exception(e, context="metrics_backfill_runs")

    # -------------------------
    # Run loop
    # -------------------------
    def request_stop(self) -> None:
        """External cancellation (signal handler): drain and stop the live source."""
        if self._stop.is_set():
            return
        self._stop.set()
        if self.state is RelayState.RUNNING:
            self._transition(RelayState.DRAINING, reason="stop_requested")
        self._disconnect_task = asyncio.get_running_loop().create_task(self.gateway.disconnect())

    async def run(self) -> None:
        """Run until the live source stops; raises on any fatal error (state FAILED)."""
        try:
            self.gateway.on_event(self.handle_live_event)
            self._transition(RelayState.AUTH_PENDING)

            logged_in = await self.gateway.authenticate_if_needed(self.authenticator)
            self.me = await self.gateway.get_self()
            log_event(
                logger,
                logging.INFO,
                "telegram_authorized",
                user_id=getattr(self.me, "id", None),
                interactive_login=bool(logged_in),
            )

            watched = await self._refresh_watched()
            self._transition(RelayState.RUNNING, chat_id=watched.chat_id, backfill=self.options.backfill_enabled)

            if self.options.backfill_enabled and not self._stop.is_set():
                self._backfill_task = asyncio.create_task(self._run_backfill(watched), name="relay_backfill")

            if not self._stop.is_set():
                await self.gateway.run_live_source()

            self._transition(RelayState.DRAINING, reason="live_source_stopped")
            await self._drain()
            self._transition(RelayState.STOPPED, **self._summary())
        except asyncio.CancelledError:
            self._stop.set()
            self._transition(RelayState.DRAINING, reason="cancelled")
            await self._drain()
            self._transition(RelayState.STOPPED, **self._summary())
            raise
        except Exception as e:
            self._stop.set()
            await self._drain()
            self._transition(RelayState.FAILED, error=str(e), error_type=type(e).__name__, relay_error=isinstance(e, RelayError))
            raise

    async def _drain(self) -> None:
        # Backfill stops at its next page boundary; the timeout below is the fallback.
        self._stop.set()
        task = self._backfill_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.options.drain_timeout_seconds)
            except asyncio.TimeoutError:
                log_event(logger, logging.WARNING, "backfill_drain_timeout", timeout_s=self.options.drain_timeout_seconds)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        try:
            await self.gateway.disconnect()
        except Exception as e:
            swallow_exception(e, context="live_source_disconnect")

    def _summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "live_seen": self.live_counters.seen,
            "live_emitted": self.live_counters.emitted,
            "live_failed": self.live_counters.failed,
        }
        if self.backfill_counters is not None:
            out["backfill_emitted"] = self.backfill_counters.emitted
            out["backfill_pages"] = self.backfill_counters.pages
        return out
