from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class EventKind(str, Enum):
    NEW = "new"
    EDIT = "edit"
    OLD = "old"


# Wire spelling of each kind in the webhook body's "type" field.
WIRE_TYPES: Dict[EventKind, str] = {
    EventKind.NEW: "newMessage",
    EventKind.EDIT: "editMessage",
    EventKind.OLD: "oldMessage",
}

# RawEvent tags and the kind each one classifies to. Unlisted tags are skipped.
TAG_NEW = "new"
TAG_EDIT = "edit"
TAG_HISTORY = "history"
TAG_KINDS: Dict[str, EventKind] = {
    TAG_NEW: EventKind.NEW,
    TAG_EDIT: EventKind.EDIT,
    TAG_HISTORY: EventKind.OLD,
}


@dataclass(frozen=True)
class WatchedChat:
    chat_id: int
    access_hash: int
    title: Optional[str] = None


@dataclass(frozen=True)
class RawEvent:
    """A live update or history entry before classification.

    `tag` says where it came from (`new`, `edit` or `history`); `message` is the
    Telethon message object (`types.Message`, `types.MessageService`, ...).
    """

    tag: str
    message: Any


@dataclass(frozen=True)
class RelayEvent:
    kind: EventKind
    message_id: int
    text: str

    @property
    def wire_type(self) -> str:
        return WIRE_TYPES[self.kind]

    def to_payload(self) -> Dict[str, str]:
        return {
            "text": self.text,
            "type": self.wire_type,
            "external_id": str(int(self.message_id)),
        }


@dataclass
class PageCursor:
    """Backfill position. `offset_id` is the exclusive upper bound for the next page; 0 means newest."""

    offset_id: int = 0
    pages_fetched: int = 0

    def advance(self, oldest_id: int) -> bool:
        """Move behind `oldest_id`. Returns False if that would not move the cursor backwards."""
        if oldest_id <= 0 or (self.offset_id and oldest_id >= self.offset_id):
            return False
        self.offset_id = int(oldest_id)
        return True


@dataclass(frozen=True)
class RelayOptions:
    watched_chat_id: int
    backfill_enabled: bool = False
    page_size: int = 100
    request_timeout_seconds: float = 30.0
    drain_timeout_seconds: float = 10.0
    text_case: str = "preserve"


@dataclass(frozen=True)
class RelayContext:
    cfg: Any
    logger: logging.Logger
    here: Path
