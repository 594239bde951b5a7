from __future__ import annotations

import logging
from typing import Any, Optional

from telethon.tl import types

from TelegramRelay.collection.types import TAG_HISTORY, TAG_KINDS, RawEvent, RelayEvent, WatchedChat
from TelegramRelay.logging_setup import log_event
from TelegramRelay.observability_metrics import relay_events_skipped_total
from shared.observability import swallow_exception

logger = logging.getLogger("collection.classify")


def origin_channel_id(message: Any) -> Optional[int]:
    peer = getattr(message, "peer_id", None)
    if isinstance(peer, types.PeerChannel):
        return int(peer.channel_id)
    return None


def _skip(raw: RawEvent, reason: str) -> None:
    source = "backfill" if raw.tag == TAG_HISTORY else "live"
    log_event(
        logger,
        logging.DEBUG,
        "classify_skip",
        reason=reason,
        tag=raw.tag,
        message_id=getattr(raw.message, "id", None),
    )
    try:
        relay_events_skipped_total.labels(source=source, reason=reason).inc()
    except Exception as e:
        swallow_exception(e, context="metrics_classify_skip")


def classify(raw: RawEvent, watched: WatchedChat, *, text_case: str = "preserve") -> Optional[RelayEvent]:
    """
    Map a raw event to a RelayEvent, or None when it should not be relayed.

    Skips (never errors): unknown tags, anything other than a plain message
    (service/empty messages), and messages whose origin is not the watched channel.
    """
    kind = TAG_KINDS.get(raw.tag)
    if kind is None:
        _skip(raw, "unknown_tag")
        return None

    msg = raw.message
    if not isinstance(msg, types.Message):
        _skip(raw, "not_a_message")
        return None

    if origin_channel_id(msg) != int(watched.chat_id):
        _skip(raw, "other_chat")
        return None

    text = msg.message or ""
    if text_case == "lower":
        text = text.lower()
    return RelayEvent(kind=kind, message_id=int(msg.id), text=text)
