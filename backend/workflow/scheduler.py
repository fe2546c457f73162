"""Cron scheduler for workflow schedules.

Each active schedule owns one asyncio task that sleeps until the next cron
occurrence (computed with croniter in the schedule's timezone), fires its
callback, and loops. The scheduler is an ordinary object handed to whoever
needs it; clock and sleep are injectable so tests can drive time.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter

from core.exceptions import SchedulingError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
FireCallback = Callable[[str], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise SchedulingError(f"Unknown timezone: {tz}") from e


def validate_cron(cron_expression: str, tz: str = "UTC") -> None:
    """Reject malformed cron expressions and unknown timezones.

    Raises:
        SchedulingError
    """
    if not isinstance(cron_expression, str) or not cron_expression.strip():
        raise SchedulingError("Cron expression is required")
    if not croniter.is_valid(cron_expression.strip()):
        raise SchedulingError(f"Invalid cron expression: {cron_expression}")
    _zone(tz or "UTC")


def next_run(cron_expression: str, tz: str = "UTC", after: Optional[datetime] = None) -> datetime:
    """Next occurrence strictly after ``after``, as an aware UTC datetime.

    The cron expression is interpreted in ``tz``, so ``0 9 * * *`` in
    Europe/Sofia means 09:00 Sofia time across DST changes.
    """
    zone = _zone(tz or "UTC")
    after = after or _utcnow()
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(zone)
    upcoming = croniter(cron_expression.strip(), local).get_next(datetime)
    return upcoming.astimezone(timezone.utc)


class WorkflowScheduler:
    """Owns one timer task per registered schedule id."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock or _utcnow
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._next_runs: dict[str, datetime] = {}

    def register(self, schedule_id: str, cron_expression: str, tz: str, callback: FireCallback) -> datetime:
        """Start (or restart) the timer for a schedule.

        Registering an id that is already registered replaces its timer,
        so calling this repeatedly is safe.

        Returns:
            The first upcoming fire time (aware UTC)
        """
        validate_cron(cron_expression, tz)
        self._stop(schedule_id)

        first = next_run(cron_expression, tz, self._clock())
        self._next_runs[schedule_id] = first
        task = asyncio.get_running_loop().create_task(
            self._run(schedule_id, cron_expression, tz, callback),
            name=f"schedule:{schedule_id}",
        )
        self._tasks[schedule_id] = task
        task.add_done_callback(lambda t, sid=schedule_id: self._forget(sid, t))
        logger.info("Schedule registered", schedule_id=schedule_id, cron=cron_expression, timezone=tz, next_run=first.isoformat())
        return first

    async def cancel(self, schedule_id: str) -> bool:
        """Stop a schedule's timer. Returns False if it was not registered."""
        task = self._stop(schedule_id)
        if task is None:
            return False
        if task is asyncio.current_task():
            return True
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Schedule cancelled", schedule_id=schedule_id)
        return True

    def now(self) -> datetime:
        return self._clock()

    def is_registered(self, schedule_id: str) -> bool:
        task = self._tasks.get(schedule_id)
        return task is not None and not task.done()

    def next_run_at(self, schedule_id: str) -> Optional[datetime]:
        return self._next_runs.get(schedule_id) if self.is_registered(schedule_id) else None

    @property
    def registered(self) -> list[str]:
        return [sid for sid in self._tasks if self.is_registered(sid)]

    async def shutdown(self) -> None:
        """Cancel every timer."""
        for schedule_id in list(self._tasks):
            await self.cancel(schedule_id)

    def _stop(self, schedule_id: str) -> Optional[asyncio.Task]:
        task = self._tasks.pop(schedule_id, None)
        self._next_runs.pop(schedule_id, None)
        if task is not None and not task.done():
            task.cancel()
        return task

    def _forget(self, schedule_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(schedule_id) is task:
            del self._tasks[schedule_id]
            self._next_runs.pop(schedule_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Schedule timer crashed", schedule_id=schedule_id, error=str(task.exception()))

    async def _run(self, schedule_id: str, cron_expression: str, tz: str, callback: FireCallback) -> None:
        last_fired: Optional[datetime] = None
        while True:
            now = self._clock()
            # Never fire the same occurrence twice if the sleep wakes early
            base = max(now, last_fired) if last_fired else now
            upcoming = next_run(cron_expression, tz, base)
            self._next_runs[schedule_id] = upcoming

            await self._sleep(max(0.0, (upcoming - now).total_seconds()))

            last_fired = upcoming
            logger.info("Schedule fired", schedule_id=schedule_id, scheduled_for=upcoming.isoformat())
            try:
                await callback(schedule_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Scheduled run failed", schedule_id=schedule_id, error=str(e), exc_info=True)
