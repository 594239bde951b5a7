"""
Shared exception handler for TelegramRelay.

Provides an observable pattern for best-effort paths: every suppressed
exception is logged with context and counted, never silently dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("telegram_relay.exceptions")

_LOGRECORD_RESERVED_KEYS = set(
    logging.LogRecord(
        name="",
        level=0,
        pathname="",
        lineno=0,
        msg="",
        args=(),
        exc_info=None,
    ).__dict__.keys()
)
_LOGRECORD_RESERVED_KEYS.update({"message", "asctime"})


def swallow_exception(
    exc: Exception,
    *,
    context: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log and count a swallowed exception with context.

    Only for best-effort work (metrics, cleanup, optional diagnostics). The
    relay's core paths either contain errors explicitly or fail fast.

    Args:
        exc: The exception that was caught
        context: Short, stable context string (used as a metrics label)
        extra: Additional fields to include in the log record

    Example:
        try:
            relay_events_seen_total.labels(source="live").inc()
        except Exception as e:
            swallow_exception(e, context="metrics_events_seen")
    """
    exc_type_name = type(exc).__name__

    log_extra: Dict[str, Any] = {"context": context, "exception_type": exc_type_name}
    for key, value in (extra or {}).items():
        # LogRecord attributes (e.g. "module") cannot be overwritten via extra.
        if key in _LOGRECORD_RESERVED_KEYS or key in log_extra:
            log_extra[f"extra_{key}"] = value
        else:
            log_extra[key] = value

    logger.warning(
        "Swallowed exception",
        exc_info=exc,
        extra=log_extra,
    )

    try:
        from TelegramRelay.observability_metrics import swallowed_exceptions_total

        swallowed_exceptions_total.labels(context=context, exception_type=exc_type_name).inc()
    except Exception:
        # Metrics must never break the runtime
        logger.debug("swallowed_exception_metric_failed", exc_info=True)
