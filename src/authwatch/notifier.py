"""Telegram notifications.

Messages are sent with MarkdownV2 formatting, so every user-controlled
value goes through ``escape_markdown``. A requests.Session is thread-safe
enough for the two callers here (the event loop and the scheduler thread)
since each call is a single independent POST.
"""

import logging
from datetime import datetime
from typing import Optional

import requests

from authwatch.errors import NotifierError
from authwatch.schema import Event

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
REQUEST_TIMEOUT_SECONDS = 10

MARKDOWN_SPECIAL_CHARS = "_*[]()~`>#+-=|{}.!\\"


def escape_markdown(text: str) -> str:
    """Escape MarkdownV2 special characters."""
    return "".join(f"\\{c}" if c in MARKDOWN_SPECIAL_CHARS else c for c in text)


def format_location(country: str, city: str) -> str:
    """Join city and country, skipping whichever is missing."""
    if city and country:
        return f"{city}, {country}"
    return country or city


class TelegramNotifier:
    """Sends login alerts and reports to a Telegram chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        server_name: str,
        session: Optional[requests.Session] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.server_name = server_name
        self.session = session or requests.Session()

    def send_login_alert(self, event: Event, country: str = "", city: str = "") -> None:
        """Send an alert for a successful login."""
        location = format_location(country, city) or event.ip
        ts = event.ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")

        text = "\n".join([
            "🔐 *SSH Login Alert*",
            f"🖥️ Server: {escape_markdown(self.server_name)}",
            "",
            f"👤 User: {escape_markdown(event.username)}",
            f"📅 Time: {escape_markdown(ts)}",
            f"🔓 Method: {escape_markdown(event.method)}",
            f"🌐 IP: {escape_markdown(event.ip)}",
            f"📍 Location: {escape_markdown(location)}",
        ])
        self.send(text)

    def send_daily_report(self, text: str) -> None:
        """Send a pre-rendered MarkdownV2 report."""
        self.send(text)

    def send_test_message(self) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        text = "\n".join([
            "✅ *authwatch Test Message*",
            f"🖥️ Server: {escape_markdown(self.server_name)}",
            f"📅 Time: {escape_markdown(now)}",
            "",
            "Connection successful\\!",
        ])
        self.send(text)

    def send(self, text: str) -> None:
        """POST a message to the Telegram Bot API.

        Raises:
            NotifierError: On transport failure or a non-200 response.
        """
        url = TELEGRAM_API_URL.format(token=self.bot_token)
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "MarkdownV2",
        }

        try:
            response = self.session.post(url, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            raise NotifierError(f"Telegram request failed: {e}") from e

        if response.status_code != 200:
            try:
                description = response.json().get("description", "")
            except ValueError:
                description = response.text[:200]
            raise NotifierError(
                f"Telegram API error: {description} (status {response.status_code})",
                status_code=response.status_code,
            )

        logger.debug(f"Sent Telegram message ({len(text)} chars)")
