"""MindEase chat backend configuration.

Loads settings from two YAML files:
  * mindease.settings.yaml   non-secret configuration
  * mindease.secrets.yaml    secrets (never committed)

Both files are optional. Missing files fall back to model defaults so the
service and the test-suite can run without any configuration on disk.
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

SETTINGS_FILE = Path("mindease.settings.yaml")
SECRETS_FILE  = Path("mindease.secrets.yaml")

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
    secret_key: Optional[str] = None


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3001
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    token_expire_minutes: int = 60 * 24 * 7


class ChatSettings(BaseModel):
    """Limits applied by the room session protocol."""
    max_content_length:   int = Field(default=2000, ge=1)
    last_message_preview: int = Field(default=100, ge=1)
    outbox_size:          int = Field(default=256, ge=1)
    history_page_size:    int = Field(default=50, ge=1)
    max_history_page:     int = Field(default=100, ge=1)


class StorageSettings(BaseModel):
    rooms_db_path: str = "rooms.duckdb"
    users_db_path: str = "users.duckdb"

    @field_validator("rooms_db_path", "users_db_path")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("database path must not be empty")
        return value


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(raw: str, base_dir: Path) -> str:
    """Resolve a relative database path against the settings file directory."""
    if raw == MEMORY_DB:
        return raw
    path = Path(raw)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    base_dir = settings_path.resolve().parent
    config.storage.rooms_db_path = _resolve_db_path(config.storage.rooms_db_path, base_dir)
    config.storage.users_db_path = _resolve_db_path(config.storage.users_db_path, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, rooms_db=%s, max_content_length=%d)",
        config.server.host,
        config.server.port,
        config.storage.rooms_db_path,
        config.chat.max_content_length,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests)."""
    global _config
    _config = None


def set_config(config: Optional[AppConfig]) -> None:
    """Install an explicit config (tests, embedding)."""
    global _config
    _config = config


def require_jwt_secret(config: AppConfig) -> str:
    """Return the token signing secret, refusing to run without one.

    Raises:
        RuntimeError: ``jwt.secret_key`` is missing from mindease.secrets.yaml.
    """
    secret_key = config.secrets.jwt.secret_key
    if not secret_key or not secret_key.strip():
        raise RuntimeError(
            "jwt.secret_key is not configured; set it in mindease.secrets.yaml"
        )
    return secret_key
