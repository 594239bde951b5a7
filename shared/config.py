"""
Centralized configuration for TelegramRelay.

Goal:
- One typed source of truth for the relay (credentials, watched chat, webhook, tuning).
- Keep the legacy `config.yml` layout (`tg_app:` section) working, with environment
  variables taking precedence over the file.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from shared.exceptions import ConfigurationError


DEFAULT_CONFIG_FILE = "config.yml"
_YAML_SECTION = "tg_app"


def _read_yaml_section(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    section = data.get(_YAML_SECTION)
    if isinstance(section, dict):
        return dict(section)
    return {k: v for k, v in data.items() if k != _YAML_SECTION}


class _TgAppYamlSource(PydanticBaseSettingsSource):
    """Reads the `tg_app:` section of the YAML config file (lowest precedence)."""

    def __init__(self, settings_cls: Type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        raw = settings_cls.model_config.get("yaml_file")
        self._values = _read_yaml_section(Path(str(raw)) if raw else None)

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self._values)


class RelayConfig(BaseSettings):
    """Configuration for the Telegram → webhook relay."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore", yaml_file=DEFAULT_CONFIG_FILE)

    # -------------------------
    # Telegram application + session
    # -------------------------
    telegram_api_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("TELEGRAM_API_ID", "TG_API_ID", "app_id"))
    telegram_api_hash: Optional[str] = Field(default=None, validation_alias=AliasChoices("TELEGRAM_API_HASH", "TG_API_HASH", "app_hash"))
    session_string: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("TELEGRAM_SESSION_STRING", "SESSION_STRING", "session_string"),
    )
    session_file: str = Field(default="relay.session", validation_alias=AliasChoices("TELEGRAM_SESSION_FILE", "session_file"))
    telegram_phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("TELEGRAM_PHONE", "phone"))
    telegram_device_model: str = Field(default="TelegramRelay", validation_alias=AliasChoices("TELEGRAM_DEVICE_MODEL"))
    telegram_request_timeout_seconds: float = Field(default=30.0, validation_alias=AliasChoices("TELEGRAM_REQUEST_TIMEOUT_SECONDS"))
    telegram_flood_max_retries: int = Field(default=5, validation_alias=AliasChoices("TELEGRAM_FLOOD_MAX_RETRIES"))
    telegram_flood_max_wait_seconds: float = Field(default=300.0, validation_alias=AliasChoices("TELEGRAM_FLOOD_MAX_WAIT_SECONDS"))

    # -------------------------
    # Watched chat + backfill
    # -------------------------
    chat_for_watch: Optional[int] = Field(default=None, validation_alias=AliasChoices("CHAT_FOR_WATCH", "chat_for_watch"))
    backfill_page_size: int = Field(default=100, validation_alias=AliasChoices("BACKFILL_PAGE_SIZE", "backfill_page_size"))
    text_case: str = Field(default="preserve", validation_alias=AliasChoices("TEXT_CASE", "text_case"))
    drain_timeout_seconds: float = Field(default=10.0, validation_alias=AliasChoices("DRAIN_TIMEOUT_SECONDS"))

    # -------------------------
    # Webhook delivery
    # -------------------------
    webhook_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("WEBHOOK_URL", "webhook_url"))
    webhook_timeout_seconds: float = Field(default=15.0, validation_alias=AliasChoices("WEBHOOK_TIMEOUT_SECONDS"))
    webhook_max_attempts: int = Field(default=3, validation_alias=AliasChoices("WEBHOOK_MAX_ATTEMPTS"))
    webhook_retry_base_seconds: float = Field(default=1.0, validation_alias=AliasChoices("WEBHOOK_RETRY_BASE_SECONDS"))
    webhook_retry_max_sleep_seconds: float = Field(default=30.0, validation_alias=AliasChoices("WEBHOOK_RETRY_MAX_SLEEP_SECONDS"))
    log_message_text: bool = Field(default=True, validation_alias=AliasChoices("LOG_MESSAGE_TEXT"))

    # -------------------------
    # Observability
    # -------------------------
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))
    log_dir: Optional[str] = Field(default=None, validation_alias=AliasChoices("LOG_DIR"))
    log_file: Optional[str] = Field(default=None, validation_alias=AliasChoices("LOG_FILE"))
    log_json: bool = Field(default=False, validation_alias=AliasChoices("LOG_JSON"))
    log_to_console: bool = Field(default=True, validation_alias=AliasChoices("LOG_TO_CONSOLE"))
    log_to_file: bool = Field(default=False, validation_alias=AliasChoices("LOG_TO_FILE"))
    log_max_bytes: int = Field(default=5_000_000, validation_alias=AliasChoices("LOG_MAX_BYTES"))
    log_backup_count: int = Field(default=5, validation_alias=AliasChoices("LOG_BACKUP_COUNT"))
    metrics_port: int = Field(default=0, validation_alias=AliasChoices("METRICS_PORT"))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, dotenv_settings, _TgAppYamlSource(settings_cls))

    @field_validator("text_case")
    @classmethod
    def _validate_text_case(cls, v: str) -> str:
        s = str(v or "").strip().lower() or "preserve"
        if s not in {"preserve", "lower"}:
            raise ValueError("TEXT_CASE must be 'preserve' or 'lower'")
        return s

    @field_validator("backfill_page_size")
    @classmethod
    def _clamp_page_size(cls, v: int) -> int:
        # messages.getHistory caps `limit` at 100.
        return max(1, min(100, int(v)))

    @field_validator("webhook_max_attempts")
    @classmethod
    def _min_attempts(cls, v: int) -> int:
        return max(1, int(v))

    def require_runtime(self) -> "RelayConfig":
        """Fail fast on the settings `run` cannot start without."""
        missing = []
        if not self.telegram_api_id:
            missing.append("TELEGRAM_API_ID (tg_app.app_id)")
        if not (self.telegram_api_hash or "").strip():
            missing.append("TELEGRAM_API_HASH (tg_app.app_hash)")
        if self.chat_for_watch is None:
            missing.append("CHAT_FOR_WATCH (tg_app.chat_for_watch)")
        if not (self.webhook_url or "").strip():
            missing.append("WEBHOOK_URL (tg_app.webhook_url)")
        if missing:
            raise ConfigurationError("Missing configuration: " + ", ".join(missing))
        return self


@lru_cache(maxsize=4)
def _cached_relay_config(config_file_str: str, env_file_str: Optional[str]) -> RelayConfig:
    class _FileBoundRelayConfig(RelayConfig):
        model_config = SettingsConfigDict(yaml_file=config_file_str)

    env_file = Path(env_file_str) if env_file_str else Path(".env")
    try:
        return _FileBoundRelayConfig(
            _env_file=env_file if env_file.exists() else None,  # type: ignore[arg-type]
            _env_file_encoding="utf-8",  # type: ignore[arg-type]
        )
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def load_relay_config(*, config_file: Optional[Path] = None, env_file: Optional[Path] = None) -> RelayConfig:
    path = Path(config_file) if config_file else Path(DEFAULT_CONFIG_FILE)
    return _cached_relay_config(str(path), str(env_file) if env_file else None)


def clear_config_cache() -> None:
    _cached_relay_config.cache_clear()
