"""Recurring task scheduler.

Tasks fire at a local wall-clock minute in their own timezone, either every
day or only on the last day of each month. A background loop polls every
``poll_interval`` seconds (30 by default, so every minute is seen at least
once) and runs whatever is due.

Rules:
- a task is due when the local hour and minute match its trigger and it
  has not fired yet on the current local date;
- monthly tasks are additionally gated on tomorrow falling in another month;
- due tasks run one at a time, in registration order, on the scheduler's
  own thread;
- a failing task is logged, still counts as fired for the day, and does
  not stop the other tasks of the same tick;
- there is no catch-up for minutes missed while the process was down, and
  no state survives a restart.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from authwatch.errors import SchedulerError

logger = logging.getLogger(__name__)

TIME_OF_DAY_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class TaskKind(str, Enum):
    """How often a task recurs."""

    DAILY = "daily"
    MONTHLY_LAST_DAY = "monthly_last_day"


@dataclass
class ScheduledTask:
    """A named recurring action."""

    name: str
    kind: TaskKind
    hour: int
    minute: int
    tz: ZoneInfo
    action: Callable[[], object]
    last_fired: date | None = None


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` into (hour, minute).

    Raises:
        ValueError: If the string is not a valid 24-hour time.
    """
    match = TIME_OF_DAY_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM")
    return hour, minute


def load_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone {name!r}") from e


def is_last_day_of_month(day: date) -> bool:
    """True if ``day`` is the final calendar day of its month."""
    return (day + timedelta(days=1)).month != day.month


def _is_due_daily(task: ScheduledTask, local_now: datetime) -> bool:
    if local_now.hour != task.hour or local_now.minute != task.minute:
        return False
    return task.last_fired is None or task.last_fired < local_now.date()


def _is_due_monthly_last_day(task: ScheduledTask, local_now: datetime) -> bool:
    return _is_due_daily(task, local_now) and is_last_day_of_month(local_now.date())


DUE_CHECKS: dict[TaskKind, Callable[[ScheduledTask, datetime], bool]] = {
    TaskKind.DAILY: _is_due_daily,
    TaskKind.MONTHLY_LAST_DAY: _is_due_monthly_last_day,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Ordered registry of recurring tasks plus the loop that fires them."""

    def __init__(
        self,
        poll_interval: float = 30.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.poll_interval = poll_interval
        self._clock = clock
        self._tasks: list[ScheduledTask] = []

    @property
    def tasks(self) -> tuple[ScheduledTask, ...]:
        return tuple(self._tasks)

    def add_daily_task(
        self, name: str, time_of_day: str, tz_name: str, action: Callable[[], object]
    ) -> ScheduledTask:
        """Register a task that fires once a day at ``time_of_day`` in ``tz_name``.

        Raises:
            SchedulerError: On a bad time, unknown timezone or duplicate name.
        """
        return self._add(name, TaskKind.DAILY, time_of_day, tz_name, action)

    def add_monthly_last_day_task(
        self, name: str, time_of_day: str, tz_name: str, action: Callable[[], object]
    ) -> ScheduledTask:
        """Register a task that fires on the last day of each month.

        Raises:
            SchedulerError: On a bad time, unknown timezone or duplicate name.
        """
        return self._add(name, TaskKind.MONTHLY_LAST_DAY, time_of_day, tz_name, action)

    def _add(
        self,
        name: str,
        kind: TaskKind,
        time_of_day: str,
        tz_name: str,
        action: Callable[[], object],
    ) -> ScheduledTask:
        if any(t.name == name for t in self._tasks):
            raise SchedulerError(f"Task already registered: {name}")

        try:
            hour, minute = parse_time_of_day(time_of_day)
            tz = load_timezone(tz_name)
        except ValueError as e:
            raise SchedulerError(f"Cannot schedule {name}: {e}") from e

        task = ScheduledTask(
            name=name, kind=kind, hour=hour, minute=minute, tz=tz, action=action
        )
        self._tasks.append(task)
        logger.info(f"Scheduled {kind.value} task {name} at {hour:02d}:{minute:02d} {tz_name}")
        return task

    def run_pending(self, now: datetime | None = None) -> list[str]:
        """Run one scheduler tick.

        Args:
            now: Current instant; defaults to the scheduler's clock.

        Returns:
            Names of the tasks that fired, in the order they ran.
        """
        if now is None:
            now = self._clock()

        fired: list[str] = []
        for task in self._tasks:
            local_now = now.astimezone(task.tz)
            if not DUE_CHECKS[task.kind](task, local_now):
                continue

            logger.info(f"Running scheduled task {task.name}")
            try:
                task.action()
            except Exception as e:
                logger.error(f"Scheduled task {task.name} failed: {e}", exc_info=True)
            else:
                logger.info(f"Scheduled task {task.name} completed")

            # Failed runs count as attempted; no retry until the next day
            task.last_fired = local_now.date()
            fired.append(task.name)

        return fired

    def run(self, stop_event: threading.Event) -> None:
        """Tick every ``poll_interval`` seconds until ``stop_event`` is set."""
        logger.info(
            f"Scheduler started with {len(self._tasks)} task(s), "
            f"polling every {self.poll_interval}s"
        )
        while not stop_event.wait(timeout=self.poll_interval):
            self.run_pending()
        logger.info("Scheduler stopped")
