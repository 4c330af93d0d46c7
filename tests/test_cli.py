"""Tests for the command-line interface."""

import json
from datetime import datetime, timezone

import pytest
from typer.testing import CliRunner

from authwatch.cli import app
from authwatch.schema import Event, EventKind
from authwatch.storage import Storage

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    """Write a complete config file pointing at temporary paths."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "telegram_bot_token": "123456:secret-token",
        "telegram_chat_id": "42",
        "server_name": "cli-host",
        "database_path": str(tmp_path / "events.db"),
        "geoip_database_path": str(tmp_path / "geo.mmdb"),
    }))
    return path


class TestCLI:
    """Tests for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "authwatch v0.1.0" in result.output

    def test_config_show_masks_token(self, config_path):
        result = runner.invoke(app, ["config", "show", "--config", str(config_path)])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["server_name"] == "cli-host"
        assert data["telegram_bot_token"] == "1234..."

    def test_config_validate(self, config_path):
        result = runner.invoke(app, ["config", "validate", "-c", str(config_path)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_config_validate_missing_token(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"telegram_chat_id": "42"}))

        result = runner.invoke(app, ["config", "validate", "-c", str(path)])

        assert result.exit_code == 1

    def test_broken_config_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{oops")

        result = runner.invoke(app, ["stats", "today", "-c", str(path)])

        assert result.exit_code == 1

    def test_stats_today(self, config_path, tmp_path, sample_event, failed_event):
        """Test stats read events written by the daemon."""
        now = datetime.now(timezone.utc)
        storage = Storage(str(tmp_path / "events.db"))
        storage.insert_event(sample_event.model_copy(update={"ts": now}))
        storage.insert_event(failed_event.model_copy(update={"ts": now}))
        storage.close()

        result = runner.invoke(app, ["stats", "today", "-c", str(config_path)])

        assert result.exit_code == 0
        assert "Server: cli-host" in result.output
        assert "Successful logins: 1" in result.output
        assert "Failed attempts: 1" in result.output

    def test_stats_logins_empty(self, config_path):
        result = runner.invoke(app, ["stats", "logins", "-c", str(config_path), "--days", "3"])

        assert result.exit_code == 0
        assert "last 3 days" in result.output
        assert "No successful logins in this period." in result.output

    def test_cleanup(self, config_path, tmp_path):
        storage = Storage(str(tmp_path / "events.db"))
        storage.insert_event(Event(
            ts="2000-01-01T00:00:00+00:00",
            kind=EventKind.FAILURE,
            username="root",
            ip="1.2.3.4",
            method="password",
        ))
        storage.close()

        result = runner.invoke(app, ["cleanup", "-c", str(config_path)])

        assert result.exit_code == 0
        assert "Deleted 1 events older than 90 days" in result.output

    def test_geoip_status_missing(self, config_path):
        result = runner.invoke(app, ["geoip", "status", "-c", str(config_path)])

        assert result.exit_code == 0
        assert "GeoIP database: not found" in result.output
