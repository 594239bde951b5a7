from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, List, Optional

from TelegramRelay.bootstrap import bootstrap_relay
from TelegramRelay.collection.auth import TerminalAuthenticator, export_session_string
from TelegramRelay.collection.client import TelegramGateway, build_client
from TelegramRelay.collection.types import RelayContext, RelayOptions
from TelegramRelay.delivery import DeliverySink, RetryPolicy, WebhookDispatcher
from TelegramRelay.logging_setup import log_event
from TelegramRelay.observability_http import start_observability_http_server
from TelegramRelay.orchestrator import RelayOrchestrator
from shared.exceptions import ConfigurationError, RelayError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_options(cfg: Any, *, all_messages: bool) -> RelayOptions:
    return RelayOptions(
        watched_chat_id=int(cfg.chat_for_watch),
        backfill_enabled=bool(all_messages),
        page_size=int(cfg.backfill_page_size),
        request_timeout_seconds=float(cfg.telegram_request_timeout_seconds),
        drain_timeout_seconds=float(cfg.drain_timeout_seconds),
        text_case=str(cfg.text_case),
    )


def build_orchestrator(ctx: RelayContext, *, all_messages: bool) -> RelayOrchestrator:
    cfg = ctx.cfg.require_runtime()
    gateway = TelegramGateway(
        build_client(cfg),
        request_timeout=cfg.telegram_request_timeout_seconds,
        flood_max_retries=cfg.telegram_flood_max_retries,
        flood_max_wait=cfg.telegram_flood_max_wait_seconds,
    )
    sink = DeliverySink(
        WebhookDispatcher(cfg.webhook_url, timeout_seconds=cfg.webhook_timeout_seconds),
        policy=RetryPolicy.from_config(cfg),
        log_text=cfg.log_message_text,
    )
    return RelayOrchestrator(
        options=build_options(cfg, all_messages=all_messages),
        gateway=gateway,
        sink=sink,
        authenticator=TerminalAuthenticator(cfg.telegram_phone),
    )


def _install_signal_handlers(orchestrator: RelayOrchestrator, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C still cancels the main task via asyncio.run.
            log_event(logger, logging.DEBUG, "signal_handler_unavailable", signal=getattr(sig, "name", str(sig)))


async def run_relay(ctx: RelayContext, args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(ctx, all_messages=bool(getattr(args, "all_messages", False)))

    port = int(getattr(ctx.cfg, "metrics_port", 0) or 0)
    if port > 0:
        start_observability_http_server(port=port, component="telegram_relay", health=orchestrator.health)
        log_event(ctx.logger, logging.INFO, "observability_http_started", port=port)

    _install_signal_handlers(orchestrator, ctx.logger)
    log_event(
        ctx.logger,
        logging.INFO,
        "relay_start",
        chat_for_watch=orchestrator.options.watched_chat_id,
        all_messages=orchestrator.options.backfill_enabled,
        page_size=orchestrator.options.page_size,
    )
    try:
        await orchestrator.run()
    except RelayError as e:
        log_event(ctx.logger, logging.ERROR, "relay_failed", error=str(e), error_type=type(e).__name__)
        return EXIT_FAILED
    except Exception:
        ctx.logger.exception("relay_crashed")
        return EXIT_FAILED
    return EXIT_OK


async def run_login(ctx: RelayContext, args: argparse.Namespace) -> int:
    session_string = await export_session_string(ctx.cfg)
    print("Your session string (set it as TELEGRAM_SESSION_STRING):")
    print(session_string)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, help="YAML config file with a tg_app section (default ./config.yml).")
    common.add_argument("--env-file", type=Path, help="Optional .env file (default ./.env if present).")
    common.add_argument("--log-level", help="Override LOG_LEVEL (DEBUG/INFO/WARNING/ERROR).")

    p = argparse.ArgumentParser(prog="tg-relay", description="Relay a Telegram channel's messages to an HTTP webhook.")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", parents=[common], help="Watch the configured channel and relay events to the webhook.")
    p_run.add_argument(
        "--all-messages",
        action="store_true",
        help="Also fetch and send all historical messages (as oldMessage) alongside live watching.",
    )

    sub.add_parser("login", parents=[common], help="Log in interactively and print a session string.")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        ctx = bootstrap_relay(config_file=args.config, env_file=args.env_file, log_level=args.log_level)
        if args.cmd == "run":
            ctx.cfg.require_runtime()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG)

    try:
        if args.cmd == "run":
            raise SystemExit(asyncio.run(run_relay(ctx, args)))
        raise SystemExit(asyncio.run(run_login(ctx, args)))
    except KeyboardInterrupt:
        log_event(ctx.logger, logging.INFO, "relay_interrupted")
        raise SystemExit(EXIT_OK)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG)
    except RelayError as e:
        log_event(ctx.logger, logging.ERROR, "command_failed", cmd=args.cmd, error=str(e))
        raise SystemExit(EXIT_FAILED)
