"""Tests for configuration loading."""

import json

import pytest

from authwatch.config import DEFAULT_CONFIG_PATH, Settings, load_settings, resolve_config_path
from authwatch.errors import ConfigError


@pytest.fixture
def config_file(tmp_path):
    def write(data) -> str:
        path = tmp_path / "config.json"
        path.write_text(data if isinstance(data, str) else json.dumps(data))
        return str(path)
    return write


class TestLoadSettings:
    """Tests for reading the JSON file and environment."""

    def test_values_from_file(self, config_file):
        path = config_file({
            "telegram_bot_token": "123:abc",
            "telegram_chat_id": "-100",
            "server_name": "bastion",
            "daily_report_time": "8:30",
            "daily_report_timezone": "Europe/Berlin",
            "retention_days": 30,
        })

        settings = load_settings(path)

        assert settings.telegram_bot_token == "123:abc"
        assert settings.telegram_chat_id == "-100"
        assert settings.server_name == "bastion"
        assert settings.daily_report_time == "08:30"
        assert settings.daily_report_timezone == "Europe/Berlin"
        assert settings.retention_days == 30

    def test_environment_overrides_file(self, config_file, monkeypatch):
        path = config_file({"server_name": "from-file", "geoip_enabled": True})
        monkeypatch.setenv("AUTHWATCH_SERVER_NAME", "from-env")
        monkeypatch.setenv("AUTHWATCH_GEOIP_ENABLED", "false")

        settings = load_settings(path)

        assert settings.server_name == "from-env"
        assert settings.geoip_enabled is False

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.json")

        assert settings.telegram_bot_token == ""
        assert settings.daily_report_time == "08:00"
        assert settings.retention_days == 90
        assert settings.source == "journal"
        assert settings.server_name

    def test_unknown_keys_ignored(self, config_file):
        settings = load_settings(config_file({"check_updates": True, "telegram_chat_id": "1"}))

        assert settings.telegram_chat_id == "1"

    def test_invalid_json(self, config_file):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(config_file("{not json"))

        assert "parse" in exc_info.value.message

    @pytest.mark.parametrize("data", [
        {"daily_report_time": "25:00"},
        {"daily_report_timezone": "Nowhere/City"},
        {"retention_days": 0},
        {"event_buffer_size": 0},
        {"log_level": "chatty"},
        {"source": "syslog"},
    ])
    def test_invalid_values(self, config_file, data):
        with pytest.raises(ConfigError):
            load_settings(config_file(data))

    def test_config_path_from_environment(self, config_file, monkeypatch):
        path = config_file({"telegram_chat_id": "77"})
        monkeypatch.setenv("AUTHWATCH_CONFIG", path)

        assert load_settings().telegram_chat_id == "77"


class TestResolveConfigPath:
    """Tests for config path selection."""

    def test_explicit_path_wins(self, monkeypatch):
        monkeypatch.setenv("AUTHWATCH_CONFIG", "/tmp/env.json")

        assert str(resolve_config_path("/tmp/explicit.json")) == "/tmp/explicit.json"

    def test_default(self):
        assert str(resolve_config_path()) == DEFAULT_CONFIG_PATH


class TestSettings:
    """Tests for settings helpers."""

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_validate_for_daemon_requires_telegram(self):
        with pytest.raises(ConfigError):
            Settings(telegram_chat_id="1").validate_for_daemon()
        with pytest.raises(ConfigError):
            Settings(telegram_bot_token="123:abc").validate_for_daemon()

    def test_validate_for_daemon_ok(self, settings):
        settings.validate_for_daemon()

    def test_redacted_masks_token(self, settings):
        data = settings.redacted()

        assert data["telegram_bot_token"] == "1234..."
        assert data["telegram_chat_id"] == "42"
        assert Settings(telegram_bot_token="short").redacted()["telegram_bot_token"] == "***"
