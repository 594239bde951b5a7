from __future__ import annotations

import logging
from typing import Any, Optional

from telethon import TelegramClient
from telethon.sessions import StringSession

from TelegramRelay.collection.client import build_client
from TelegramRelay.logging_setup import log_event
from shared.exceptions import AuthenticationError

logger = logging.getLogger("collection.auth")


class TerminalAuthenticator:
    """Interactive login: phone number, login code and 2FA password are read from the terminal."""

    def __init__(self, phone: Optional[str] = None) -> None:
        self.phone = (phone or "").strip() or None

    async def __call__(self, client: TelegramClient) -> None:
        try:
            if self.phone:
                await client.start(phone=self.phone)
            else:
                await client.start()
        except (EOFError, KeyboardInterrupt) as e:
            raise AuthenticationError("auth: login flow aborted at the terminal") from e
        except Exception as e:
            raise AuthenticationError(f"auth: {e}") from e
        log_event(logger, logging.INFO, "telegram_login_ok")


async def export_session_string(cfg: Any, *, authenticator: Optional[TerminalAuthenticator] = None) -> str:
    """Log in with a fresh in-memory session and return it as a portable string (TELEGRAM_SESSION_STRING)."""
    client = build_client(cfg, session=StringSession())
    auth = authenticator or TerminalAuthenticator(getattr(cfg, "telegram_phone", None))
    try:
        await client.connect()
        await auth(client)
        return StringSession.save(client.session)
    finally:
        await client.disconnect()
