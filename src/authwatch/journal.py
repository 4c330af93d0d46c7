"""Live authentication log sources.

A log source spawns a streaming subprocess, decodes each stdout line into
an Event on a background reader thread and publishes the events on a
bounded EventChannel. When the subprocess's output ends for any reason
(crash, kill, shutdown) the channel is closed, which tells the daemon that
ingestion is over.

Two concrete sources exist:

- JournalSource follows ``journalctl -o json`` for the ssh unit;
- AuthLogSource follows /var/log/auth.log with ``tail -F`` on hosts
  without journald.

Both only see entries written from "now" onward; nothing is replayed.
"""

import json
import logging
import subprocess
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Protocol

from authwatch.channel import ChannelClosed, EventChannel
from authwatch.errors import SourceStartError
from authwatch.parser import parse_line, parse_message
from authwatch.schema import Event

logger = logging.getLogger(__name__)


class LogSource(Protocol):
    """Capability interface the daemon depends on."""

    def start(self, stop_event: threading.Event) -> None: ...

    def events(self) -> EventChannel: ...

    def stop(self) -> None: ...

    def wait(self, timeout: float) -> bool: ...


class RawLine(NamedTuple):
    """One decoded journal record."""

    timestamp: datetime
    message: str
    identifier: str


class SubprocessSource:
    """Base class for sources backed by a line-streaming subprocess.

    Subclasses provide ``command()`` and ``decode(line)``.
    """

    name = "subprocess"

    def __init__(self, buffer_size: int = 100):
        self._channel = EventChannel(capacity=buffer_size)
        self._proc: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self.lines_read = 0
        self.events_sent = 0
        self.decode_errors = 0

    def command(self) -> list[str]:
        raise NotImplementedError

    def decode(self, line: str) -> Event | None:
        raise NotImplementedError

    def events(self) -> EventChannel:
        return self._channel

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(
            self.command(),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
        )

    def start(self, stop_event: threading.Event) -> None:
        """Spawn the subprocess and the reader thread.

        Args:
            stop_event: Shared cancellation flag; once set the reader stops
                forwarding events and exits.

        Raises:
            SourceStartError: If the subprocess cannot be spawned.
        """
        cmd = self.command()
        try:
            self._proc = self._spawn()
        except OSError as e:
            raise SourceStartError(cmd, str(e)) from e

        logger.info(f"Started {self.name} source (pid {self._proc.pid}): {' '.join(cmd)}")

        self._reader = threading.Thread(
            target=self._read_loop,
            args=(self._proc.stdout, stop_event),
            daemon=True,
            name=f"{self.name}-reader",
        )
        self._reader.start()

    def _read_loop(self, stream, stop_event: threading.Event) -> None:
        try:
            for line in stream:
                if stop_event.is_set():
                    break

                line = line.rstrip("\n")
                if not line:
                    continue
                self.lines_read += 1

                try:
                    event = self.decode(line)
                except Exception as e:
                    self.decode_errors += 1
                    logger.warning(f"{self.name} skipping undecodable line: {e}")
                    continue
                if event is None:
                    continue

                if not self._channel.send(event, stop_event):
                    break
                self.events_sent += 1
        except (OSError, ValueError, ChannelClosed) as e:
            logger.error(f"{self.name} reader error: {e}")
        finally:
            self._channel.close()
            close_stream = getattr(stream, "close", None)
            if close_stream is not None:
                try:
                    close_stream()
                except OSError as e:
                    logger.debug(f"{self.name} failed to close output pipe: {e}")
            logger.info(
                f"{self.name} reader finished "
                f"({self.lines_read} lines, {self.events_sent} events, "
                f"{self.decode_errors} undecodable)"
            )

    def stop(self) -> None:
        """Send SIGTERM to the subprocess. Does not wait for it to exit."""
        if self._proc is None or self._proc.poll() is not None:
            return
        logger.info(f"Stopping {self.name} source (pid {self._proc.pid})")
        self._proc.terminate()

    def wait(self, timeout: float) -> bool:
        """Wait for the subprocess and reader to finish.

        Escalates to SIGKILL if the subprocess is still alive after
        ``timeout`` seconds.

        Returns:
            True if everything exited, False if something is still running.
        """
        exited = True
        if self._proc is not None:
            try:
                self._proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.name} source did not terminate, killing...")
                self._proc.kill()
                try:
                    self._proc.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.error(f"{self.name} source pid {self._proc.pid} survived SIGKILL")
                    exited = False

        if self._reader is not None:
            self._reader.join(timeout=timeout)
            if self._reader.is_alive():
                exited = False

        return exited


class JournalSource(SubprocessSource):
    """Follows the systemd journal for the ssh unit in JSON output mode."""

    name = "journal"

    def __init__(
        self,
        unit: str = "ssh",
        identifier: str = "sshd",
        buffer_size: int = 100,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(buffer_size=buffer_size)
        self.unit = unit
        self.identifier = identifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def command(self) -> list[str]:
        return ["journalctl", "-u", self.unit, "-f", "-o", "json", "--since", "now"]

    def decode_record(self, line: str) -> RawLine | None:
        """Decode one JSON journal record.

        Returns:
            RawLine, or None if the line is not a JSON object.
        """
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            self.decode_errors += 1
            logger.debug(f"Skipping undecodable journal record: {e}")
            return None

        if not isinstance(entry, dict):
            self.decode_errors += 1
            logger.debug(f"Skipping non-object journal record: {line[:80]!r}")
            return None

        return RawLine(
            timestamp=self._parse_timestamp(entry.get("__REALTIME_TIMESTAMP")),
            message=_as_text(entry.get("MESSAGE")),
            identifier=_as_text(entry.get("SYSLOG_IDENTIFIER")),
        )

    def decode(self, line: str) -> Event | None:
        record = self.decode_record(line)
        if record is None or record.identifier != self.identifier:
            return None
        return parse_message(record.message, record.timestamp)

    def _parse_timestamp(self, value) -> datetime:
        # __REALTIME_TIMESTAMP is microseconds since the epoch, as a string
        if not value:
            return self._clock()
        try:
            usec = int(value)
        except (TypeError, ValueError):
            return self._clock()
        try:
            return datetime.fromtimestamp(usec // 1_000_000, tz=timezone.utc).replace(
                microsecond=usec % 1_000_000
            )
        except (OverflowError, OSError, ValueError):
            return self._clock()


class AuthLogSource(SubprocessSource):
    """Follows a syslog-format auth log file (e.g. /var/log/auth.log)."""

    name = "authlog"

    def __init__(
        self,
        path: str = "/var/log/auth.log",
        buffer_size: int = 100,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(buffer_size=buffer_size)
        self.path = path
        self._clock = clock or (lambda: datetime.now().astimezone())

    def command(self) -> list[str]:
        return ["tail", "-F", "-n", "0", self.path]

    def decode(self, line: str) -> Event | None:
        now = self._clock()
        event = parse_line(line, now.year)
        # Lines from late December read after New Year would land in the future
        if event is not None and event.ts > now + timedelta(days=1):
            event = parse_line(line, now.year - 1)
        return event


def _as_text(value) -> str:
    # journalctl emits non-UTF-8 fields as byte arrays
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return ""
    if value is None:
        return ""
    return str(value)

