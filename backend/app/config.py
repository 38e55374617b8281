"""Realtime service configuration.

Loads settings from two YAML files:
  * realtime.settings.yaml  - non-secret configuration
  * realtime.secrets.yaml   - secrets (never committed)

Both files are optional; missing keys fall back to the model defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("realtime.settings.yaml")
SECRETS_FILE  = Path("realtime.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class RealtimeSettings(BaseModel):
    """Tunables of the messaging core."""
    typing_timeout_seconds:       float = Field(2.0, gt=0)
    presence_grace_seconds:       float = Field(4.0, ge=0)
    membership_cache_ttl_seconds: float = Field(30.0, gt=0)
    backlog_size:                 int   = Field(50, ge=1)
    max_page_size:                int   = Field(100, ge=1)
    max_message_length:           int   = Field(5000, ge=1)
    outbox_size:                  int   = Field(256, ge=1)

    @field_validator("presence_grace_seconds")
    @classmethod
    def _warn_on_unusual_grace(cls, value: float) -> float:
        if not 3.0 <= value <= 5.0:
            logger.warning(
                "presence_grace_seconds=%s is outside the recommended 3-5s window", value
            )
        return value


class StoreSettings(BaseModel):
    path: str = "realtime.duckdb"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    A relative ``store.path`` is resolved against the settings file's directory
    (``:memory:`` is left alone).
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path  = Path(secrets_path) if secrets_path else SECRETS_FILE

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    store_path = config.store.path
    if store_path != ":memory:" and not Path(store_path).is_absolute():
        config.store.path = str(settings_path.resolve().parent / store_path)

    logger.info(
        "Config loaded (server=%s:%s, store=%s, typing_timeout=%ss, presence_grace=%ss)",
        config.server.host,
        config.server.port,
        config.store.path,
        config.realtime.typing_timeout_seconds,
        config.realtime.presence_grace_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with None) the process-wide configuration."""
    global _config
    _config = config
