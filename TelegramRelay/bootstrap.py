from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from TelegramRelay.collection.types import RelayContext
from TelegramRelay.logging_setup import setup_logging
from shared.config import load_relay_config


def bootstrap_relay(
    *,
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
    log_level: Optional[str] = None,
) -> RelayContext:
    cfg = load_relay_config(config_file=config_file, env_file=env_file)
    setup_logging(
        level=log_level or cfg.log_level,
        log_dir=cfg.log_dir,
        log_file=cfg.log_file,
        log_json=cfg.log_json,
        to_console=cfg.log_to_console,
        to_file=cfg.log_to_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
    )
    logger = logging.getLogger("relay")
    return RelayContext(cfg=cfg, logger=logger, here=Path(__file__).resolve().parent)
