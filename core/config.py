"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for realmauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. DEBUG forces the log level down to DEBUG
      so provider diagnostics ("No such user ...") become visible.

Scope: these are process-level settings (where the database lives, which
realm file to load, how loud to log). Per-realm mapping options (table and
column names, expiry windows) live in realm/config.py, not here.

Layer rule: core/ is the kernel. This module may not import from auth/,
realm/, or datastore/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("realmauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path.cwd() / 'realmauth.db'}"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Data store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Reflect the live database instead of requiring a declared MetaData.
    # Relationships are then derived from foreign keys.
    reflect_schema: bool = True

    # ------------------------------------------------------------------
    # Realms
    # ------------------------------------------------------------------

    # JSON file holding {"realms": {"<name>": {...realm settings...}}}.
    # Empty string means "use an all-defaults realm".
    realm_settings_file: str = ""
    realm_name: str = "users"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {value!r}")
        return level

    @model_validator(mode="after")
    def apply_debug(self) -> "Settings":
        if self.debug and self.log_level != "DEBUG":
            self.log_level = "DEBUG"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
