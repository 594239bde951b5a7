"""
Pytest configuration and fixtures for relay tests.

Builds real Telethon TL objects (messages, channels) and provides in-memory
fakes for the Telegram gateway and the delivery sink, so the pipeline can be
exercised without a network.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
from telethon.tl import types

from TelegramRelay.collection.types import RawEvent, RelayEvent, WatchedChat

# Keep a developer's local config out of the tests.
for _name in ("LOG_TO_FILE", "METRICS_PORT"):
    os.environ.pop(_name, None)

WATCHED_ID = 42
OTHER_ID = 99
_DATE = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)


def make_message(msg_id: int, text: str = "", *, chat_id: int = WATCHED_ID) -> types.Message:
    return types.Message(id=msg_id, peer_id=types.PeerChannel(channel_id=chat_id), date=_DATE, message=text)


def make_service_message(msg_id: int, *, chat_id: int = WATCHED_ID) -> types.MessageService:
    return types.MessageService(
        id=msg_id,
        peer_id=types.PeerChannel(channel_id=chat_id),
        date=_DATE,
        action=types.MessageActionPinMessage(),
    )


def make_channel(chat_id: int = WATCHED_ID, *, access_hash: int = 777, title: str = "Watched") -> types.Channel:
    return types.Channel(id=chat_id, title=title, photo=types.ChatPhotoEmpty(), date=_DATE, access_hash=access_hash)


class FakeGateway:
    """In-memory stand-in for TelegramGateway."""

    def __init__(
        self,
        *,
        history: Optional[List[Any]] = None,
        chats: Optional[List[Any]] = None,
        live: Optional[List[RawEvent]] = None,
    ) -> None:
        # Newest first, like messages.getHistory.
        self.history = sorted(history or [], key=lambda m: m.id, reverse=True)
        self.chats = chats if chats is not None else [make_channel()]
        self.live = list(live or [])
        self.fetch_calls: List[Dict[str, Any]] = []
        self.resolve_calls = 0
        self.disconnect_calls = 0
        self.handler: Optional[Callable[[RawEvent], Any]] = None
        self.fetch_error: Optional[BaseException] = None
        self.fetch_errors: List[BaseException] = []
        self.auth_error: Optional[BaseException] = None
        self.self_error: Optional[BaseException] = None
        self.resolve_error: Optional[BaseException] = None
        self.wait_for_stop = False
        self.live_yields = 5
        self._disconnected = asyncio.Event()

    async def resolve_chat(self, chat_id: int) -> List[Any]:
        self.resolve_calls += 1
        if self.resolve_error is not None:
            raise self.resolve_error
        return list(self.chats)

    async def fetch_history_page(self, watched: WatchedChat, offset_id: int, limit: int) -> List[Any]:
        self.fetch_calls.append({"chat_id": watched.chat_id, "offset_id": offset_id, "limit": limit})
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if self.fetch_error is not None:
            raise self.fetch_error
        older = [m for m in self.history if not offset_id or m.id < offset_id]
        return older[:limit]

    def on_event(self, handler: Callable[[RawEvent], Any]) -> None:
        self.handler = handler

    async def authenticate_if_needed(self, authenticator: Any) -> bool:
        if self.auth_error is not None:
            raise self.auth_error
        return False

    async def get_self(self) -> Any:
        if self.self_error is not None:
            raise self.self_error
        return types.User(id=1, first_name="relay")

    async def run_live_source(self) -> None:
        assert self.handler is not None
        for raw in self.live:
            await self.handler(raw)
        # Let a concurrent backfill task make progress.
        for _ in range(self.live_yields):
            await asyncio.sleep(0)
        if self.wait_for_stop:
            await self._disconnected.wait()

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._disconnected.set()


class RecordingSink:
    """Delivery sink that records events; `fail_ids` report a failed delivery."""

    def __init__(self, *, fail_ids: Optional[set] = None) -> None:
        self.events: List[RelayEvent] = []
        self.fail_ids = set(fail_ids or ())

    async def __call__(self, event: RelayEvent) -> bool:
        self.events.append(event)
        return event.message_id not in self.fail_ids

    @property
    def payloads(self) -> List[Dict[str, str]]:
        return [e.to_payload() for e in self.events]


@pytest.fixture
def watched() -> WatchedChat:
    return WatchedChat(chat_id=WATCHED_ID, access_hash=777, title="Watched")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
