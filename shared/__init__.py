"""Cross-cutting pieces of TelegramRelay: configuration, exceptions, observability helpers."""
