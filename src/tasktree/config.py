"""
Application configuration using Pydantic Settings.

Presets per environment, overridable through ``TASKTREE_*`` environment
variables (``TASKTREE_DATABASE_PATH``, ``TASKTREE_PAGE_LIMIT``,
``TASKTREE_SESSION_DAYS``, ``TASKTREE_CORS_ORIGINS`` as a comma-separated
list, ...). The preset itself is chosen by ``TASKTREE_ENV``.
"""

import os
from datetime import timedelta
from typing import Annotated, Any, List, Optional

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ConfigError(Exception):
    """Raised when the requested environment has no valid configuration."""


class AppConfig(BaseSettings):
    """Settings for one environment; environment variables win over the preset."""

    model_config = SettingsConfigDict(
        env_prefix="TASKTREE_",
        case_sensitive=False,
        frozen=True,
    )

    environment_name: str = "unconfigured"
    database_path: str = "tasktree.db"
    database_pool_size: int = 10
    # Upper bound on waiting for a pooled connection or a locked database.
    storage_timeout_seconds: float = 5.0
    session_days: int = 7
    page_limit: int = 1000
    max_page_limit: int = 1000
    bcrypt_rounds: int = 12
    cors_origins: Annotated[List[str], NoDecode] = ["*"]
    host: str = "0.0.0.0"
    port: int = 8000
    discord_api_url: str = "https://discord.com/api/users/@me"
    identity_timeout_seconds: float = 10.0

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # Preset values arrive as init kwargs and must yield to the environment
        return env_settings, init_settings

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def check_page_limit(self) -> "AppConfig":
        if self.page_limit > self.max_page_limit:
            raise ValueError(
                f"page_limit ({self.page_limit}) exceeds max_page_limit ({self.max_page_limit})"
            )
        return self

    @property
    def session_duration(self) -> timedelta:
        return timedelta(days=self.session_days)

    @classmethod
    def from_env(cls, environment_name: Optional[str] = None) -> "AppConfig":
        """Load the preset named by ``environment_name`` or ``TASKTREE_ENV``."""
        return get_config(environment_name or os.getenv("TASKTREE_ENV", "development"))


PRESETS = {
    "production": {
        "database_path": "/app/data/tasktree.db",
        "database_pool_size": 20,
    },
    "development": {
        "database_path": "tasktree.db",
        "database_pool_size": 5,
        "bcrypt_rounds": 10,
    },
    "test": {
        "database_path": "tasktree_test.db",
        "database_pool_size": 4,
        "storage_timeout_seconds": 2.0,
        "bcrypt_rounds": 4,
    },
}


def get_config(environment_name: str) -> AppConfig:
    """
    Return the settings for ``development``, ``test`` or ``production``.

    Raises:
        ConfigError: unknown environment or an invalid ``TASKTREE_*`` value
    """
    if environment_name not in PRESETS:
        raise ConfigError(f"No valid config chosen: {environment_name}")
    try:
        return AppConfig(environment_name=environment_name, **PRESETS[environment_name])
    except ValidationError as e:
        raise ConfigError(f"Invalid {environment_name} configuration: {e}")
