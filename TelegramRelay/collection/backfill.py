from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from TelegramRelay.collection.classify import classify
from TelegramRelay.collection.counters import Counters
from TelegramRelay.collection.types import TAG_HISTORY, PageCursor, RawEvent, RelayEvent, WatchedChat
from TelegramRelay.logging_setup import bind_log_context, log_event, timed
from TelegramRelay.observability_metrics import backfill_pages_fetched_total, relay_events_seen_total
from shared.exceptions import BackfillPageError, StaleChatError
from shared.observability import swallow_exception

logger = logging.getLogger("collection.backfill")

DEFAULT_PAGE_SIZE = 100

Emit = Callable[[RelayEvent], Awaitable[Any]]
Refresh = Callable[[], Awaitable[WatchedChat]]


async def _fetch_page(gateway: Any, watched: WatchedChat, cursor: PageCursor, page_size: int) -> list:
    try:
        return list(await gateway.fetch_history_page(watched, cursor.offset_id, page_size))
    except StaleChatError:
        raise
    except Exception as e:
        raise BackfillPageError(f"history page at offset {cursor.offset_id} failed: {e}") from e


async def run_backfill(
    *,
    gateway: Any,
    watched: WatchedChat,
    page_size: int = DEFAULT_PAGE_SIZE,
    emit: Emit,
    stop: Optional[asyncio.Event] = None,
    refresh: Optional[Refresh] = None,
    text_case: str = "preserve",
) -> Counters:
    """
    Walk the watched channel's history from newest to oldest and emit every message as `old`.

    Pages are requested `page_size` at a time behind a PageCursor; the run ends when
    a page comes back short. Any fetch error aborts the whole run with
    BackfillPageError (a later run starts again from the newest message). `stop` is
    checked only between pages, so a page is always emitted completely.
    """
    page_size = max(1, int(page_size))
    counters = Counters()
    cursor = PageCursor()
    refreshed = False
    t0 = timed()

    with bind_log_context(chat=watched.chat_id, source="backfill", step="backfill"):
        while True:
            if stop is not None and stop.is_set():
                counters.cancelled = True
                log_event(logger, logging.INFO, "backfill_cancelled", offset_id=cursor.offset_id, **counters.as_log_fields())
                return counters

            try:
                page = await _fetch_page(gateway, watched, cursor, page_size)
            except StaleChatError as e:
                if refresh is None or refreshed:
                    raise BackfillPageError(str(e)) from e
                log_event(logger, logging.WARNING, "backfill_chat_stale", offset_id=cursor.offset_id, error=str(e))
                try:
                    watched = await refresh()
                except Exception as re:
                    raise BackfillPageError(f"re-resolving stale chat failed: {re}") from re
                refreshed = True
                continue

            cursor.pages_fetched += 1
            counters.pages = cursor.pages_fetched
            try:
                backfill_pages_fetched_total.inc()
            except Exception as e:
                swallow_exception(e, context="metrics_backfill_pages")

            for entry in page:
                counters.seen += 1
                try:
                    relay_events_seen_total.labels(source="backfill").inc()
                except Exception as e:
                    swallow_exception(e, context="metrics_events_seen")
                event = classify(RawEvent(tag=TAG_HISTORY, message=entry), watched, text_case=text_case)
                if event is None:
                    counters.skipped += 1
                    continue
                delivered = await emit(event)
                if delivered is False:
                    counters.failed += 1
                else:
                    counters.emitted += 1
                counters.last_message_id = event.message_id

            log_event(
                logger,
                logging.INFO,
                "backfill_page",
                page=cursor.pages_fetched,
                offset_id=cursor.offset_id,
                entries=len(page),
                emitted=counters.emitted,
                elapsed_s=round(timed() - t0, 2),
            )

            if len(page) < page_size:
                log_event(logger, logging.INFO, "backfill_done", elapsed_s=round(timed() - t0, 2), **counters.as_log_fields())
                return counters

            oldest_id = min(int(getattr(entry, "id", 0) or 0) for entry in page)
            if not cursor.advance(oldest_id):
                raise BackfillPageError(f"history cursor did not move backwards (offset {cursor.offset_id}, oldest {oldest_id})")
