"""
Observability utilities for TelegramRelay.

Provides shared exception handling helpers.
"""

from __future__ import annotations

from .exception_handler import swallow_exception

__all__ = ["swallow_exception"]
