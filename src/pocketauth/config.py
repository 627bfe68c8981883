# Settings and config-dir helpers.
# Created: 2026-10-18
#
# Settings come from (lowest to highest priority): defaults, .env,
# ~/.pocketauth/config.json, POCKETAUTH_* environment variables.

from __future__ import annotations

import json
import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Return the config directory, creating it on first use."""
    override = os.environ.get("POCKETAUTH_HOME")
    path = Path(override).expanduser() if override else Path.home() / ".pocketauth"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_path() -> Path:
    return get_config_dir() / "config.json"


class Settings(BaseSettings):
    """Process-wide settings for the authorization server."""

    model_config = SettingsConfigDict(
        env_prefix="POCKETAUTH_",
        env_file=".env",
        extra="ignore",
    )

    database_url: str | None = Field(
        default=None, description="SQLAlchemy URL; defaults to a SQLite file in the config dir"
    )
    state_secret: str | None = Field(
        default=None, description="HMAC key for the authorization state blob"
    )
    admin_token: str | None = Field(
        default=None, description="Bearer token for client administration (disabled if unset)"
    )
    login_url: str = "/login"
    default_scope: str = "openid"

    host: str = "127.0.0.1"
    port: int = 8890
    log_level: str = "INFO"
    audit_log_path: str | None = None

    auth_rate_per_second: float = 1.0
    auth_rate_burst: int = 10

    @classmethod
    def load(cls) -> Settings:
        """Load settings, layering config.json under env vars."""
        path = get_config_path()
        file_values: dict = {}
        if path.exists():
            try:
                file_values = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", path, exc)
        # Init kwargs outrank env in pydantic-settings; keep env on top.
        overridden = {
            k: v
            for k, v in file_values.items()
            if f"POCKETAUTH_{k.upper()}" not in os.environ and k in cls.model_fields
        }
        return cls(**overridden)

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{get_config_dir() / 'pocketauth.db'}"

    def resolved_state_secret(self) -> str:
        """Return the state HMAC key, generating and persisting one if needed."""
        if self.state_secret:
            return self.state_secret
        path = get_config_dir() / "state_secret"
        if path.exists():
            return path.read_text().strip()
        secret = secrets.token_urlsafe(32)
        path.write_text(secret)
        try:
            path.chmod(0o600)
        except OSError as exc:
            logger.warning("Could not restrict permissions on %s: %s", path, exc)
        logger.info("Generated new state secret at %s", path)
        return secret


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.load()
