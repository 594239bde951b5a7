from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from telethon.errors import FloodError, FloodWaitError, SlowModeWaitError

from TelegramRelay.logging_setup import log_event

logger = logging.getLogger("collection.backoff")

INITIAL_RETRY_DELAY = 1.0
BACKOFF_MULTIPLIER = 2.0


async def retry_flood_wait(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_retries: int = 5,
    max_delay: float = 300.0,
    **kwargs: Any,
) -> Any:
    """
    Await `func`, sleeping through Telegram flood limits.

    Only FLOOD_WAIT / SLOWMODE_WAIT / generic flood errors are retried; every other
    error propagates on the first occurrence so callers keep their own failure policy.
    """
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except (FloodWaitError, SlowModeWaitError) as e:
            if attempt >= max_retries:
                raise
            delay = float(getattr(e, "seconds", 0) or 0)
            delay = min(max(delay, INITIAL_RETRY_DELAY), max_delay)
        except FloodError:
            if attempt >= max_retries:
                raise
            delay = min(INITIAL_RETRY_DELAY * (BACKOFF_MULTIPLIER**attempt), max_delay)
        log_event(logger, logging.WARNING, "telegram_flood_wait", attempt=attempt + 1, sleep_seconds=delay)
        await asyncio.sleep(delay)
    raise AssertionError("unreachable")
