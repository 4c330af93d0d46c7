"""Pytest fixtures for authwatch tests."""

import json
import os
import threading
from datetime import datetime, timezone

import pytest

from authwatch.config import Settings
from authwatch.journal import JournalSource
from authwatch.schema import Event, EventKind, Location
from authwatch.storage import Storage


class FakeProcess:
    """Stands in for subprocess.Popen: stdout is any iterable of lines."""

    def __init__(self, lines, pid: int = 4242):
        self.stdout = lines
        self.pid = pid
        self.returncode = None
        self.terminated = threading.Event()
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.returncode = -15
        self.terminated.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self.terminated.set()

    def wait(self, timeout=None):
        return self.returncode


class ScriptedJournalSource(JournalSource):
    """JournalSource fed from an in-memory list of journal lines."""

    def __init__(self, lines, **kwargs):
        super().__init__(**kwargs)
        self.process = FakeProcess(lines)

    def _spawn(self):
        return self.process


def _blocking_lines(process_holder: dict):
    # Yields nothing until the fake process is terminated, like `journalctl -f`
    process_holder["process"].terminated.wait(timeout=10)
    return
    yield


class IdleJournalSource(JournalSource):
    """JournalSource whose subprocess never produces output until stopped."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        holder: dict = {}
        self.process = FakeProcess(_blocking_lines(holder))
        holder["process"] = self.process

    def _spawn(self):
        return self.process


def journal_line(
    message: str,
    identifier: str = "sshd",
    usec: int = 1_735_725_600_000_000,
) -> str:
    """Build one ``journalctl -o json`` output line."""
    return json.dumps({
        "__REALTIME_TIMESTAMP": str(usec),
        "MESSAGE": message,
        "SYSLOG_IDENTIFIER": identifier,
        "_SYSTEMD_UNIT": "ssh.service",
    }) + "\n"


class FakeNotifier:
    """Records what would have been sent to Telegram."""

    def __init__(self, error: Exception | None = None):
        self.alerts: list[tuple[Event, str, str]] = []
        self.reports: list[str] = []
        self.error = error

    def send_login_alert(self, event, country="", city=""):
        if self.error:
            raise self.error
        self.alerts.append((event, country, city))

    def send_daily_report(self, text):
        if self.error:
            raise self.error
        self.reports.append(text)


class FakeResolver:
    """GeoIP resolver with a fixed table."""

    def __init__(self, table: dict[str, Location] | None = None, error: Exception | None = None):
        self.table = table or {}
        self.error = error
        self.closed = False
        self.reloads = 0

    def lookup(self, ip):
        if self.error:
            raise self.error
        return self.table.get(ip)

    def reload(self):
        self.reloads += 1

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's AUTHWATCH_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("AUTHWATCH_"):
            monkeypatch.delenv(key)


@pytest.fixture
def sample_event():
    """Return a successful login event."""
    return Event(
        ts=datetime(2025, 1, 1, 8, 0, 0, tzinfo=timezone.utc),
        kind=EventKind.SUCCESS,
        username="alice",
        ip="192.168.1.100",
        port=54321,
        method="password",
    )


@pytest.fixture
def failed_event():
    """Return a failed login event for an invalid user."""
    return Event(
        ts=datetime(2025, 1, 1, 8, 5, 0, tzinfo=timezone.utc),
        kind=EventKind.FAILURE,
        username="admin",
        ip="142.0.45.14",
        port=52772,
        method="password",
        invalid_user=True,
    )


@pytest.fixture
def storage(tmp_path):
    """Create a temporary event database."""
    store = Storage(str(tmp_path / "events.db"))
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path):
    """Daemon settings pointing at temporary paths, GeoIP disabled."""
    return Settings(
        telegram_bot_token="123456:test-token",
        telegram_chat_id="42",
        server_name="test-host",
        geoip_enabled=False,
        geoip_database_path=str(tmp_path / "geo.mmdb"),
        database_path=str(tmp_path / "daemon.db"),
        shutdown_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def fake_resolver():
    return FakeResolver({"10.0.0.50": Location(country="Germany", city="Berlin")})
