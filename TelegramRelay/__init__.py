"""Relay a Telegram channel's new, edited and historical messages to an HTTP webhook."""

__version__ = "0.1.0"
