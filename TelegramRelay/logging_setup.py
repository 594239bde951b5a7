import contextlib
import contextvars
import asyncio
import json
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional


_chat_var: contextvars.ContextVar[str] = contextvars.ContextVar("relay_chat", default="-")
_message_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("relay_message_id", default="-")
_source_var: contextvars.ContextVar[str] = contextvars.ContextVar("relay_source", default="-")
_step_var: contextvars.ContextVar[str] = contextvars.ContextVar("relay_step", default="-")


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str) -> str:
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).strip()


@contextlib.contextmanager
def bind_log_context(
    *,
    chat: Optional[Any] = None,
    message_id: Optional[Any] = None,
    source: Optional[str] = None,
    step: Optional[str] = None,
) -> Iterator[None]:
    tokens = []
    try:
        if chat is not None:
            tokens.append((_chat_var, _chat_var.set(str(chat))))
        if message_id is not None:
            tokens.append((_message_id_var, _message_id_var.set(str(message_id))))
        if source is not None:
            tokens.append((_source_var, _source_var.set(str(source))))
        if step is not None:
            tokens.append((_step_var, _step_var.set(str(step))))
        yield
    finally:
        for var, token in reversed(tokens):
            try:
                var.reset(token)
            except ValueError:
                # Token created in another context (e.g. a copied thread context).
                logging.getLogger("logging_setup").exception("Failed to reset log context var=%s", getattr(var, "name", "<unknown>"))


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "chat"):
            record.chat = _chat_var.get()
        if not hasattr(record, "message_id"):
            record.message_id = _message_id_var.get()
        if not hasattr(record, "source"):
            record.source = _source_var.get()
        if not hasattr(record, "step"):
            record.step = _step_var.get()
        if not hasattr(record, "event"):
            record.event = record.msg if isinstance(record.msg, str) else record.name
        if not hasattr(record, "data"):
            record.data = None
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", record.getMessage()),
            "msg": record.getMessage(),
            "chat": getattr(record, "chat", "-"),
            "message_id": getattr(record, "message_id", "-"),
            "source": getattr(record, "source", "-"),
            "step": getattr(record, "step", "-"),
        }
        data = getattr(record, "data", None)
        if isinstance(data, dict) and data:
            payload["data"] = data

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        data = getattr(record, "data", None)
        if isinstance(data, dict) and data:
            try:
                return f"{base} data={json.dumps(data, ensure_ascii=False, separators=(',', ':'))}"
            except (TypeError, ValueError):
                return f"{base} data=<unserializable>"
        return base


def log_event(logger: logging.Logger, level: int, event: str, **data: Any) -> None:
    logger.log(level, event, extra={"event": event, "data": data or None})


def timed() -> float:
    return time.perf_counter()


async def run_in_thread(func, /, *args: Any, **kwargs: Any) -> Any:
    ctx = contextvars.copy_context()
    return await asyncio.to_thread(ctx.run, func, *args, **kwargs)


def setup_logging(
    *,
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    log_json: Optional[bool] = None,
    to_console: Optional[bool] = None,
    to_file: Optional[bool] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
) -> None:
    """
    Configure relay logging (console + optional rotating file).

    Explicit arguments win; otherwise these environment variables apply:
      - LOG_LEVEL: DEBUG/INFO/WARNING/ERROR/CRITICAL (default INFO)
      - LOG_DIR: directory to write logs (default: ./logs)
      - LOG_FILE: filename (default: telegram_relay.log)
      - LOG_MAX_BYTES: max size per file (default: 5_000_000)
      - LOG_BACKUP_COUNT: rotated backups to keep (default: 5)
      - LOG_TO_CONSOLE: enable console logging (default: true)
      - LOG_TO_FILE: enable file logging (default: false)
      - LOG_JSON: write JSON logs (default: false)

    Notes:
      - Idempotent; calling multiple times is safe.
      - Never log session strings or the API hash.
    """
    root = logging.getLogger()
    if getattr(root, "_telegram_relay_configured", False):
        return

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper().strip()
    log_level = getattr(logging, level_name, logging.INFO)
    root.setLevel(log_level)

    use_json = _env_bool("LOG_JSON", False) if log_json is None else bool(log_json)
    use_console = _env_bool("LOG_TO_CONSOLE", True) if to_console is None else bool(to_console)
    use_file = _env_bool("LOG_TO_FILE", False) if to_file is None else bool(to_file)
    context_filter = _ContextFilter()

    base_fmt = (
        "%(asctime)s %(levelname)s %(name)s "
        "chat=%(chat)s msg_id=%(message_id)s source=%(source)s step=%(step)s "
        "%(message)s"
    )
    formatter: logging.Formatter = _JsonFormatter() if use_json else _TextFormatter(
        fmt=base_fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    def _add_handler(h: logging.Handler) -> None:
        h.setLevel(log_level)
        h.addFilter(context_filter)
        h.setFormatter(formatter)
        root.addHandler(h)

    if use_console:
        _add_handler(logging.StreamHandler())

    if use_file:
        chosen_dir = Path(log_dir or os.environ.get("LOG_DIR") or (Path.cwd() / "logs"))
        filename = log_file or os.environ.get("LOG_FILE") or "telegram_relay.log"
        path = chosen_dir / filename

        file_max_bytes = int(max_bytes if max_bytes is not None else _env_str("LOG_MAX_BYTES", "5000000"))
        file_backup_count = int(backup_count if backup_count is not None else _env_str("LOG_BACKUP_COUNT", "5"))

        try:
            chosen_dir.mkdir(parents=True, exist_ok=True)
            _add_handler(
                RotatingFileHandler(
                    path,
                    maxBytes=file_max_bytes,
                    backupCount=file_backup_count,
                    encoding="utf-8",
                )
            )
        except OSError:
            # Degrade to console-only logging instead of failing startup.
            logging.getLogger("logging_setup").warning("Failed to enable file logging for %s; continuing with console only.", path, exc_info=True)

    # Telethon logs every reconnect at INFO; keep it one level quieter than ours.
    logging.getLogger("telethon").setLevel(max(log_level, logging.WARNING))

    root._telegram_relay_configured = True
    file_handler_paths = [getattr(h, "baseFilename") for h in root.handlers if hasattr(h, "baseFilename")]
    log_event(
        root,
        logging.INFO,
        "logging_configured",
        log_level=level_name,
        json=use_json,
        to_console=use_console,
        to_file=use_file,
        file_paths=file_handler_paths or None,
    )
