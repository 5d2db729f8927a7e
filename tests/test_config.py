"""Unit tests for core/config.py.

Covers:
- defaults without any environment
- environment overrides
- LOG_LEVEL normalization and rejection
- DEBUG forcing the log level
"""

from collections.abc import Generator

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch) -> Generator[None, None, None]:
    for name in ("DATABASE_URL", "LOG_LEVEL", "DEBUG", "REALM_SETTINGS_FILE", "REALM_NAME", "REFLECT_SCHEMA"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.database_url.startswith("sqlite:///")
        assert settings.database_url.endswith("realmauth.db")
        assert settings.log_level == "INFO"
        assert settings.reflect_schema is True
        assert settings.realm_settings_file == ""
        assert settings.realm_name == "users"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
        monkeypatch.setenv("REALM_NAME", "staff")
        settings = Settings(_env_file=None)
        assert settings.database_url == "sqlite:///:memory:"
        assert settings.realm_name == "staff"

    def test_log_level_is_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", " warning ")
        assert Settings(_env_file=None).log_level == "WARNING"

    def test_unknown_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_debug_forces_debug_level(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        assert Settings(_env_file=None).log_level == "DEBUG"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
