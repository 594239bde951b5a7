from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from telethon import TelegramClient, events, functions, types
from telethon.errors import ChannelInvalidError
from telethon.sessions import StringSession

from TelegramRelay.collection.backoff import retry_flood_wait
from TelegramRelay.collection.types import TAG_EDIT, TAG_NEW, RawEvent, WatchedChat
from TelegramRelay.logging_setup import log_event
from shared.exceptions import AuthenticationError, ConfigurationError, RelayError, SelfLookupError, StaleChatError

logger = logging.getLogger("collection.client")

RawEventHandler = Callable[[RawEvent], Awaitable[None]]
Authenticator = Callable[[TelegramClient], Awaitable[None]]

_HISTORY_TYPES = (types.messages.ChannelMessages, types.messages.Messages, types.messages.MessagesSlice)


def get_telegram_config(cfg: Any) -> Tuple[int, str, Any, str]:
    api_id = int(getattr(cfg, "telegram_api_id", 0) or 0)
    api_hash = str(getattr(cfg, "telegram_api_hash", "") or "").strip()
    if not (api_id and api_hash):
        raise ConfigurationError("Missing Telegram credentials. Set TELEGRAM_API_ID and TELEGRAM_API_HASH (or tg_app.app_id/app_hash).")
    session_string = str(getattr(cfg, "session_string", "") or "").strip()
    session: Any = StringSession(session_string) if session_string else str(getattr(cfg, "session_file", "") or "relay.session")
    device_model = str(getattr(cfg, "telegram_device_model", "TelegramRelay") or "TelegramRelay")
    return api_id, api_hash, session, device_model


def build_client(cfg: Any, *, session: Optional[Any] = None) -> TelegramClient:
    api_id, api_hash, default_session, device_model = get_telegram_config(cfg)
    return TelegramClient(
        session if session is not None else default_session,
        api_id,
        api_hash,
        device_model=device_model,
        timeout=int(getattr(cfg, "telegram_request_timeout_seconds", 30) or 30),
        # Replays updates missed while offline through Telethon's own gap recovery.
        catch_up=True,
        # One handler at a time so live events reach the webhook in arrival order.
        sequential_updates=True,
    )


class TelegramGateway:
    """
    Thin async facade over a TelegramClient.

    Every Telegram request the relay makes goes through here so the rest of the
    pipeline works on plain lists and RawEvents and can be tested with fakes.
    """

    def __init__(
        self,
        client: TelegramClient,
        *,
        request_timeout: float = 30.0,
        flood_max_retries: int = 5,
        flood_max_wait: float = 300.0,
    ) -> None:
        self.client = client
        self.request_timeout = float(request_timeout)
        self.flood_max_retries = int(flood_max_retries)
        self.flood_max_wait = float(flood_max_wait)

    async def _timed_call(self, request: Any) -> Any:
        return await asyncio.wait_for(self.client(request), timeout=self.request_timeout)

    async def _call(self, request: Any) -> Any:
        return await retry_flood_wait(
            self._timed_call,
            request,
            max_retries=self.flood_max_retries,
            max_delay=self.flood_max_wait,
        )

    async def resolve_chat(self, chat_id: int) -> List[Any]:
        result = await self._call(
            functions.channels.GetChannelsRequest(id=[types.InputChannel(channel_id=int(chat_id), access_hash=0)])
        )
        return list(getattr(result, "chats", None) or [])

    async def fetch_history_page(self, watched: WatchedChat, offset_id: int, limit: int) -> List[Any]:
        peer = types.InputPeerChannel(channel_id=int(watched.chat_id), access_hash=int(watched.access_hash))
        try:
            result = await self._call(
                functions.messages.GetHistoryRequest(
                    peer=peer,
                    offset_id=int(offset_id),
                    offset_date=None,
                    add_offset=0,
                    limit=int(limit),
                    max_id=0,
                    min_id=0,
                    hash=0,
                )
            )
        except ChannelInvalidError as e:
            raise StaleChatError(f"channel {watched.chat_id} handle rejected: {e}") from e
        if not isinstance(result, _HISTORY_TYPES):
            raise RelayError(f"unexpected messages type: {type(result).__name__}")
        return list(result.messages)

    def on_event(self, handler: RawEventHandler) -> None:
        async def _on_new(event) -> None:
            await handler(RawEvent(tag=TAG_NEW, message=event.message))

        async def _on_edit(event) -> None:
            await handler(RawEvent(tag=TAG_EDIT, message=event.message))

        self.client.add_event_handler(_on_new, events.NewMessage())
        self.client.add_event_handler(_on_edit, events.MessageEdited())

    async def authenticate_if_needed(self, authenticator: Authenticator) -> bool:
        """Connect and run `authenticator` only when the stored session is not authorized."""
        try:
            if not self.client.is_connected():
                await self.client.connect()
            if await self.client.is_user_authorized():
                return False
            log_event(logger, logging.INFO, "telegram_login_required")
            await authenticator(self.client)
            authorized = await self.client.is_user_authorized()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"auth: {e}") from e
        if not authorized:
            raise AuthenticationError("auth: session is still not authorized after login flow")
        return True

    async def get_self(self) -> Any:
        try:
            me = await self.client.get_me()
        except Exception as e:
            raise SelfLookupError(f"call self: {e}") from e
        if me is None:
            raise SelfLookupError("call self: no user returned for this session")
        return me

    async def run_live_source(self) -> None:
        log_event(logger, logging.INFO, "live_source_started")
        await self.client.run_until_disconnected()

    async def disconnect(self) -> None:
        if self.client.is_connected():
            await self.client.disconnect()
