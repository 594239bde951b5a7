from __future__ import annotations

import asyncio
import logging
from typing import Any

from telethon.tl import types

from TelegramRelay.collection.types import WatchedChat
from TelegramRelay.logging_setup import log_event
from shared.exceptions import ResolutionError

logger = logging.getLogger("collection.channels")

_BOT_API_CHANNEL_PREFIX = "-100"


def normalize_chat_id(chat_id: Any) -> int:
    """
    Return the bare positive channel id.

    Accepts the MTProto id (`1234567890`) and the Bot API form (`-1001234567890`).
    """
    s = str(chat_id if chat_id is not None else "").strip()
    if s.startswith(_BOT_API_CHANNEL_PREFIX) and len(s) > len(_BOT_API_CHANNEL_PREFIX):
        s = s[len(_BOT_API_CHANNEL_PREFIX):]
    try:
        value = int(s)
    except ValueError:
        raise ResolutionError(f"invalid chat id: {chat_id!r}") from None
    if value <= 0:
        raise ResolutionError(f"chat id must be a positive channel id, got {chat_id!r}")
    return value


async def resolve_watched_chat(gateway: Any, chat_id: Any, *, timeout: float = 30.0) -> WatchedChat:
    channel_id = normalize_chat_id(chat_id)
    try:
        chats = await asyncio.wait_for(gateway.resolve_chat(channel_id), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ResolutionError(f"failed to fetch channel {channel_id}: timed out after {timeout}s") from e
    except Exception as e:
        raise ResolutionError(f"failed to fetch channel {channel_id}: {e}") from e

    if not chats:
        raise ResolutionError(f"no channels found for id {channel_id}")

    channel = chats[0]
    if not isinstance(channel, types.Channel):
        raise ResolutionError(f"unexpected chat type: {type(channel).__name__}")

    watched = WatchedChat(
        chat_id=int(channel.id),
        access_hash=int(channel.access_hash or 0),
        title=getattr(channel, "title", None) or None,
    )
    log_event(logger, logging.INFO, "watched_chat_resolved", chat_id=watched.chat_id, title=watched.title)
    return watched
