"""sshd log message parsing.

Turns a single sshd message into an Event. Two input forms are handled:

- journal messages, where the record carries its own absolute timestamp
  and only the message text needs parsing (``parse_message``);
- classic syslog lines from /var/log/auth.log, where the timestamp is an
  embedded ``Mon DD HH:MM:SS`` fragment without a year (``parse_line``).

Everything here is pure: no I/O, no state, same input gives same output.
"""

import re
from datetime import datetime

from authwatch.schema import Event, EventKind

SUCCESS_PATTERN = re.compile(
    r"^Accepted\s+(password|publickey)\s+for\s+(\S+)\s+from\s+(\S+)\s+port\s+(\S+)"
)

FAILURE_PATTERN = re.compile(
    r"^Failed\s+(password|publickey)\s+for\s+(invalid user\s+)?(\S+)\s+from\s+(\S+)\s+port\s+(\S+)"
)

SYSLOG_PATTERN = re.compile(
    r"^(\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+\S+\s+sshd\[\d+\]:\s+(.*)$"
)

# Locale-independent month abbreviations (strptime's %b follows LC_TIME)
MONTHS: dict[str, int] = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}


def parse_message(message: str, timestamp: datetime) -> Event | None:
    """Parse a bare sshd message into an Event.

    Args:
        message: Message text, e.g. ``Accepted publickey for bob from ...``.
        timestamp: Absolute time of the record.

    Returns:
        Event, or None when the message is not a login attempt.
    """
    event = _parse_success(message, timestamp)
    if event is not None:
        return event
    return _parse_failure(message, timestamp)


def parse_line(line: str, year: int) -> Event | None:
    """Parse a full syslog line from auth.log into an Event.

    Args:
        line: Raw line, e.g. ``Jan  5 10:00:00 host sshd[42]: Accepted ...``.
        year: Year to assume for the timestamp fragment.

    Returns:
        Event with a local-time timestamp, or None when the line is not an
        sshd login attempt or its timestamp is unreadable.
    """
    match = SYSLOG_PATTERN.match(line)
    if not match:
        return None

    try:
        timestamp = parse_syslog_timestamp(match.group(1), year)
    except ValueError:
        return None

    return parse_message(match.group(2), timestamp)


def parse_syslog_timestamp(fragment: str, year: int) -> datetime:
    """Rebuild a syslog ``Mon DD HH:MM:SS`` fragment into a local datetime.

    Single-digit days may be padded with one or two spaces; both give the
    same date.

    Args:
        fragment: Timestamp fragment without a year.
        year: Year to assume.

    Returns:
        Timezone-aware datetime in the host's local timezone.

    Raises:
        ValueError: If the fragment is not a valid timestamp.
    """
    parts = fragment.split()
    if len(parts) != 3:
        raise ValueError(f"Cannot parse syslog timestamp: {fragment!r}")

    month_name, day_text, time_text = parts
    month = MONTHS.get(month_name)
    if month is None:
        raise ValueError(f"Unknown month in syslog timestamp: {fragment!r}")

    clock = datetime.strptime(time_text, "%H:%M:%S")
    naive = datetime(year, month, int(day_text), clock.hour, clock.minute, clock.second)

    # A naive datetime is interpreted as local time by astimezone()
    return naive.astimezone()


def _parse_port(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def _parse_success(message: str, timestamp: datetime) -> Event | None:
    match = SUCCESS_PATTERN.match(message)
    if not match:
        return None

    method, username, ip, port = match.groups()
    return Event(
        ts=timestamp,
        kind=EventKind.SUCCESS,
        method=method,
        username=username,
        ip=ip,
        port=_parse_port(port),
    )


def _parse_failure(message: str, timestamp: datetime) -> Event | None:
    match = FAILURE_PATTERN.match(message)
    if not match:
        return None

    method, invalid_marker, username, ip, port = match.groups()
    return Event(
        ts=timestamp,
        kind=EventKind.FAILURE,
        method=method,
        invalid_user=invalid_marker is not None,
        username=username,
        ip=ip,
        port=_parse_port(port),
    )
