"""The monitoring daemon.

Three activities run concurrently:

- the log source's reader thread, producing events onto a bounded channel;
- the scheduler thread, firing recurring tasks;
- the main loop (this module), the single consumer of the event channel.

The main loop handles one event completely before pulling the next, so
events are processed in the order the source emitted them and never
overlap. Scheduled tasks call into the same storage, notifier and GeoIP
collaborators from the scheduler thread; those collaborators do their own
locking.

Shutdown happens on SIGINT/SIGTERM or when the event channel closes (the
log subprocess exited). Teardown stops the source, waits for it and the
scheduler with a bounded timeout, then closes the GeoIP resolver and the
storage, attempting every step even if an earlier one fails.
"""

import logging
import queue
import signal
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authwatch.channel import ChannelClosed
from authwatch.config import Settings
from authwatch.errors import GeoIPError, NotifierError, StorageError
from authwatch.geoip import GeoIPUpdater, GeoResolver
from authwatch.journal import AuthLogSource, JournalSource, LogSource
from authwatch.notifier import TelegramNotifier
from authwatch.report import ReportGenerator
from authwatch.scheduler import Scheduler, load_timezone
from authwatch.schema import Event
from authwatch.storage import Storage

logger = logging.getLogger(__name__)

DAILY_REPORT_TASK = "daily-report"
CLEANUP_TASK = "retention-cleanup"
GEOIP_UPDATE_TASK = "geoip-update"

# How long the main loop blocks on the channel before rechecking for a signal
RECEIVE_TIMEOUT_SECONDS = 0.5


def build_source(settings: Settings) -> LogSource:
    """Create the configured log source."""
    if settings.source == "authlog":
        return AuthLogSource(
            path=settings.auth_log_path,
            buffer_size=settings.event_buffer_size,
        )
    return JournalSource(
        unit=settings.journal_unit,
        identifier=settings.syslog_identifier,
        buffer_size=settings.event_buffer_size,
    )


class Daemon:
    """Wires the log source and scheduler to storage, GeoIP and Telegram."""

    def __init__(
        self,
        settings: Settings,
        source: Optional[LogSource] = None,
        storage: Optional[Storage] = None,
        notifier: Optional[TelegramNotifier] = None,
        resolver: Optional[GeoResolver] = None,
        updater: Optional[GeoIPUpdater] = None,
        reporter: Optional[ReportGenerator] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.storage = storage or Storage(settings.database_path)
        self.source = source or build_source(settings)
        self.notifier = notifier or TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            settings.server_name,
        )
        self.reporter = reporter or ReportGenerator(self.storage, settings.server_name)
        self.scheduler = scheduler or Scheduler(poll_interval=settings.scheduler_poll_seconds)
        self._clock = clock

        self.updater: Optional[GeoIPUpdater] = None
        self.resolver: Optional[GeoResolver] = resolver
        if settings.geoip_enabled:
            self.updater = updater or GeoIPUpdater(settings.geoip_database_path)
            if self.resolver is None:
                self._init_geoip()

        self._stop_event = threading.Event()
        self._scheduler_thread: Optional[threading.Thread] = None
        self._previous_handlers: dict[int, object] = {}
        self._shut_down = False

        self.events_processed = 0
        self.event_errors = 0

    def _init_geoip(self) -> None:
        if not self.updater.database_exists():
            logger.info("GeoIP database not found, downloading...")
            try:
                self.updater.update()
            except GeoIPError as e:
                logger.warning(f"Failed to download GeoIP database: {e}")
                return

        try:
            self.resolver = GeoResolver(self.settings.geoip_database_path)
            logger.info(f"GeoIP database loaded: {self.settings.geoip_database_path}")
        except GeoIPError as e:
            logger.warning(f"GeoIP initialization failed, continuing without geo lookup: {e}")

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def register_tasks(self) -> None:
        """Register the recurring tasks.

        Raises:
            SchedulerError: If a task has an invalid time or timezone.
        """
        if self.settings.daily_report_enabled:
            self.scheduler.add_daily_task(
                DAILY_REPORT_TASK,
                self.settings.daily_report_time,
                self.settings.daily_report_timezone,
                self.send_daily_report,
            )

        self.scheduler.add_daily_task(CLEANUP_TASK, "03:00", "UTC", self.run_cleanup)

        if self.settings.geoip_enabled:
            self.scheduler.add_monthly_last_day_task(
                GEOIP_UPDATE_TASK, "04:00", "UTC", self.refresh_geoip
            )

    def run(self) -> None:
        """Run until a termination signal arrives or the log source ends.

        Raises:
            SourceStartError: If the log subprocess cannot be spawned.
            SchedulerError: If task registration fails.
        """
        try:
            self.register_tasks()
            self._install_signal_handlers()
            self.source.start(self._stop_event)
            logger.info("Started monitoring SSH logins")

            self._scheduler_thread = threading.Thread(
                target=self.scheduler.run,
                args=(self._stop_event,),
                daemon=True,
                name="scheduler",
            )
            self._scheduler_thread.start()

            logger.info("Daemon started")
            self._loop()
        finally:
            self.shutdown()

    def _loop(self) -> None:
        channel = self.source.events()

        while not self._stop_event.is_set():
            try:
                event = channel.receive(timeout=RECEIVE_TIMEOUT_SECONDS)
            except queue.Empty:
                continue
            except ChannelClosed:
                logger.info("Log source closed, shutting down")
                return
            self._handle(event)

        self._drain(channel)

    def _drain(self, channel) -> None:
        # Events already accepted onto the channel are processed before shutdown
        drained = 0
        while True:
            try:
                event = channel.receive(timeout=0)
            except (queue.Empty, ChannelClosed):
                break
            self._handle(event)
            drained += 1
        if drained:
            logger.info(f"Processed {drained} queued event(s) before shutdown")

    def _handle(self, event: Event) -> None:
        try:
            self.process_event(event)
        except Exception as e:
            self.event_errors += 1
            logger.error(f"Unexpected error processing event: {e}", exc_info=True)

    def process_event(self, event: Event) -> None:
        """Enrich, store and (for successful logins) alert on one event."""
        self.events_processed += 1

        country, city = "", ""
        if self.resolver is not None:
            try:
                location = self.resolver.lookup(event.ip)
            except GeoIPError as e:
                logger.warning(f"GeoIP lookup failed for {event.ip}: {e}")
            else:
                if location is not None:
                    country, city = location.country, location.city

        try:
            self.storage.insert_event(event, country, city)
        except StorageError as e:
            self.event_errors += 1
            logger.error(f"Failed to store event: {e}")
            return

        if event.is_success:
            logger.info(
                f"Successful SSH login: user={event.username} ip={event.ip} "
                f"method={event.method} country={country} city={city}"
            )
            try:
                self.notifier.send_login_alert(event, country, city)
            except NotifierError as e:
                self.event_errors += 1
                logger.error(f"Failed to send Telegram alert: {e}")
        else:
            logger.debug(
                f"Failed SSH attempt: user={event.username} ip={event.ip} "
                f"invalid_user={event.invalid_user}"
            )

    def send_daily_report(self) -> None:
        """Scheduled: report on yesterday (report timezone) and send it."""
        tz = load_timezone(self.settings.daily_report_timezone)
        yesterday = self._clock().astimezone(tz).date() - timedelta(days=1)
        text = self.reporter.generate_daily_report(yesterday, tz)
        self.notifier.send_daily_report(text)
        logger.info(f"Sent daily report for {yesterday}")

    def run_cleanup(self) -> int:
        """Scheduled: delete events past the retention window."""
        deleted = self.storage.cleanup(self.settings.retention_days)
        if deleted > 0:
            logger.info(f"Retention cleanup deleted {deleted} event(s)")
        return deleted

    def refresh_geoip(self) -> None:
        """Scheduled: download a newer GeoIP database and swap it in."""
        if self.updater is None:
            return

        try:
            needs_update = self.updater.needs_update()
        except GeoIPError as e:
            logger.warning(f"Failed to check for GeoIP update: {e}")
            return

        if not needs_update:
            logger.info("GeoIP database is up to date")
            return

        self.updater.update()
        if self.resolver is not None:
            self.resolver.reload()
        else:
            self.resolver = GeoResolver(self.settings.geoip_database_path)

    def request_stop(self, reason: str = "requested") -> None:
        if not self._stop_event.is_set():
            logger.info(f"Stop {reason}, shutting down")
        self._stop_event.set()

    def _handle_signal(self, signum, frame) -> None:
        self.request_stop(f"signal {signal.Signals(signum).name} received")

    def _install_signal_handlers(self) -> None:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _stop_source(self) -> None:
        self.source.stop()
        if not self.source.wait(self.settings.shutdown_timeout_seconds):
            logger.warning("Log source did not exit within the shutdown timeout")

    def _stop_scheduler(self) -> None:
        if self._scheduler_thread is None:
            return
        self._scheduler_thread.join(timeout=self.settings.shutdown_timeout_seconds)
        if self._scheduler_thread.is_alive():
            logger.warning("Scheduler still running a task at shutdown")

    def _close_resolver(self) -> None:
        if self.resolver is not None:
            self.resolver.close()

    def shutdown(self) -> list[Exception]:
        """Tear down in order, attempting every step.

        Returns:
            Errors raised by individual steps (empty on a clean shutdown).
        """
        if self._shut_down:
            return []
        self._shut_down = True
        self._stop_event.set()

        logger.info("Shutting down")
        errors: list[Exception] = []
        steps = [
            ("stop log source", self._stop_source),
            ("stop scheduler", self._stop_scheduler),
            ("close GeoIP resolver", self._close_resolver),
            ("close storage", self.storage.close),
            ("restore signal handlers", self._restore_signal_handlers),
        ]
        for name, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Shutdown step '{name}' failed: {e}")
                errors.append(e)

        logger.info(
            f"Shutdown complete ({self.events_processed} events processed, "
            f"{self.event_errors} errors)"
        )
        return errors
