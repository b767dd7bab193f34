"""Tests for application settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from latchkey.config.settings import DEFAULT_SECRET_FIELD_NAMES, Settings, get_settings


class TestSettings:
    """Tests for Settings."""

    def test_paths_derive_from_home(self, tmp_path: Path) -> None:
        """Test default file locations live under the state directory."""
        settings = Settings(home=tmp_path)

        assert settings.config_file == tmp_path / "config.json"
        assert settings.auth_profiles_file == tmp_path / "auth-profiles.json"
        assert tmp_path / "credentials.json" in settings.legacy_artifact_paths()

    def test_explicit_config_path(self, tmp_path: Path) -> None:
        """Test config_path overrides the derived location."""
        settings = Settings(home=tmp_path, config_path=tmp_path / "other.json")
        assert settings.config_file == tmp_path / "other.json"

    def test_environment_overrides(self, monkeypatch, tmp_path: Path) -> None:
        """Test LATCHKEY_ variables are read."""
        monkeypatch.setenv("LATCHKEY_HOME", str(tmp_path))
        monkeypatch.setenv("LATCHKEY_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LATCHKEY_SECRET_FIELD_NAMES", '["api_key", "Bearer-Token"]')

        settings = get_settings()

        assert settings.home == tmp_path
        assert settings.log_level == "DEBUG"
        assert settings.secret_field_names == ["apikey", "bearertoken"]

    def test_home_expands_user(self) -> None:
        """Test ~ in the state directory is expanded."""
        settings = Settings(home=Path("~/.latchkey-test"))
        assert "~" not in str(settings.home)

    def test_default_field_names(self) -> None:
        """Test the built-in secret field names are used by default."""
        assert Settings().secret_field_names == DEFAULT_SECRET_FIELD_NAMES

    def test_invalid_log_level(self) -> None:
        """Test unknown log levels are rejected."""
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_get_settings_is_cached(self) -> None:
        """Test get_settings returns one instance until the cache is cleared."""
        assert get_settings() is get_settings()
