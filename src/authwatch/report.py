"""Report generation from stored events.

The daily report is MarkdownV2 text for Telegram; the stats and logins
reports are plain text for the command line.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from authwatch.notifier import escape_markdown, format_location
from authwatch.storage import Storage

logger = logging.getLogger(__name__)

TOP_LIMIT = 10


def format_number(n: int) -> str:
    """Format an integer with thousands separators."""
    return f"{n:,}"


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Start and end instants of a local calendar day in ``tz``."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


class ReportGenerator:
    """Builds human-readable reports from the event store."""

    def __init__(self, storage: Storage, server_name: str):
        self.storage = storage
        self.server_name = server_name

    def generate_daily_report(self, day: date, tz: Optional[ZoneInfo] = None) -> str:
        """Render the daily summary for one local calendar day.

        Args:
            day: The calendar day to report on.
            tz: Timezone defining the day's boundaries (UTC if omitted).

        Returns:
            MarkdownV2 text.
        """
        tz = tz or ZoneInfo("UTC")
        since, until = day_bounds(day, tz)

        stats = self.storage.failed_stats(since, until)
        success_count = self.storage.success_count(since, until)
        top_users = self.storage.top_usernames(since, until, TOP_LIMIT)
        top_ips = self.storage.top_ips(since, until, TOP_LIMIT)

        lines: list[str] = []
        lines.append("📊 *Daily SSH Report*")
        lines.append(f"🖥️ Server: {escape_markdown(self.server_name)}")
        lines.append(f"📅 {escape_markdown(day.isoformat())}")
        lines.append("")

        lines.append("📈 *Summary*")
        lines.append(f"• Successful logins: {escape_markdown(format_number(success_count))}")
        lines.append(f"• Failed attempts: {escape_markdown(format_number(stats.total_attempts))}")
        lines.append(f"• Unique IPs: {escape_markdown(format_number(stats.unique_ips))}")
        lines.append(f"• Unique usernames: {escape_markdown(format_number(stats.unique_usernames))}")

        if top_users:
            lines.append("")
            lines.append(f"👤 *Top {TOP_LIMIT} Usernames*")
            for i, entry in enumerate(top_users, start=1):
                lines.append(
                    f"{i}\\. {escape_markdown(entry.username)} \\- "
                    f"{escape_markdown(format_number(entry.count))}"
                )

        if top_ips:
            lines.append("")
            lines.append(f"🌐 *Top {TOP_LIMIT} IPs*")
            for i, entry in enumerate(top_ips, start=1):
                location = format_location(entry.country, entry.city)
                label = escape_markdown(entry.ip)
                if location:
                    label += f" \\({escape_markdown(location)}\\)"
                lines.append(f"{i}\\. {label} \\- {escape_markdown(format_number(entry.count))}")

        logger.debug(
            f"Built daily report for {day}: {success_count} logins, "
            f"{stats.total_attempts} failures"
        )
        return "\n".join(lines) + "\n"

    def generate_stats(self, days: int, now: Optional[datetime] = None) -> str:
        """Plain-text totals for the last ``days`` days."""
        now = now or datetime.now(timezone.utc)
        stats = self.storage.overall_stats(now - timedelta(days=days))

        lines = [
            f"SSH Statistics (last {days} days)",
            f"Server: {self.server_name}",
            "",
            f"Successful logins: {format_number(stats.success_count)}",
            f"Failed attempts: {format_number(stats.failed_count)}",
            f"Unique IPs: {format_number(stats.unique_ips)}",
            f"Unique usernames: {format_number(stats.unique_usernames)}",
        ]
        return "\n".join(lines) + "\n"

    def generate_logins_report(self, days: int, now: Optional[datetime] = None) -> str:
        """Plain-text list of successful logins in the last ``days`` days."""
        now = now or datetime.now(timezone.utc)
        logins = self.storage.successful_logins(now - timedelta(days=days))

        lines = [
            f"Successful SSH Logins (last {days} days)",
            f"Server: {self.server_name}",
            "",
        ]

        if not logins:
            lines.append("No successful logins in this period.")
            return "\n".join(lines) + "\n"

        for login in logins:
            ts = login.ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")
            row = f"{ts}  {login.username:<15}  {login.method:<12}  {login.ip}"
            location = format_location(login.country, login.city)
            if location:
                row += f" ({location})"
            lines.append(row)

        return "\n".join(lines) + "\n"
