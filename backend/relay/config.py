"""Chat relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml  — non-secret configuration
  * relay.secrets.yaml   — secrets (never committed)

The secrets file is looked up next to the settings file. Missing files fall
back to defaults so the relay can start with no configuration at all.
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

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")

MEMORY_DB = ":memory:"


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
    level:  str = "info"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StorageSettings(BaseModel):
    db_path: str = "relay_messages.duckdb"


class DeliverySettings(BaseModel):
    """Fan-out behaviour of the delivery engine."""
    push_timeout_seconds:      float = 5.0
    dedupe_channel_recipients: bool  = False

    @field_validator("push_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("push_timeout_seconds must be positive")
        return value


class AuthSettings(BaseModel):
    """How a connection's identity is established.

    With ``require_token`` off, a client-supplied ``userId`` is trusted as-is
    (a verified token still wins when both are present).
    """
    require_token:  bool          = False
    identity_claim: str           = "id"
    audience:       Optional[str] = None
    leeway_seconds: int           = 0


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, base_dir: Path) -> str:
    if db_path == MEMORY_DB:
        return db_path
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return str(path)


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object.

    Args:
        settings_path: Settings file to read. Defaults to
            ``relay.settings.yaml`` in the working directory.

    Returns:
        The merged settings; relative storage paths are resolved against
        the settings file's directory.
    """
    settings_file = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_file = settings_file.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    app_settings.storage.db_path = _resolve_db_path(
        app_settings.storage.db_path, settings_file.resolve().parent
    )
    logger.info(
        "Settings loaded (server=%s:%s, db=%s, require_token=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.db_path,
        app_settings.auth.require_token,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppSettings) -> None:
    """Install *config* as the process-wide settings."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget cached settings (used by tests)."""
    global _config
    _config = None
