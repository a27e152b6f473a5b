"""Polling scheduler for recurring syncs.

Every ``tick_interval_seconds`` the scheduler selects connections whose
schedule is due and dispatches a run for each. Dispatches within a tick are
spaced by ``stagger_seconds``; at most ``max_concurrent_sessions`` runs hold a
browser session at once. A connection with a run in flight is never
dispatched again until that run has completed and its schedule advanced.
"""

import asyncio
import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from banksync.config import BankSyncSettings, get_settings
from banksync.connectors import available_institutions
from banksync.errors import ConnectionBusyError
from banksync.models import Frequency, Schedule, SyncRun, SyncRunStatus
from banksync.orchestrator import SyncOrchestrator
from banksync.storage import LedgerStore

logger = logging.getLogger(__name__)

_INTERVALS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}


class Clock(Protocol):
    """Time source; replaced in tests."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def _add_month(day: date) -> date:
    year, month = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _advance_date(day: date, frequency: Frequency) -> date:
    if frequency == Frequency.MONTHLY:
        return _add_month(day)
    return day + _INTERVALS[frequency]


def compute_next_run(schedule: Schedule, completed_at: datetime) -> datetime | None:
    """Work out when a schedule is next due after a run.

    With a preferred time, the next run is on the following day, week or
    month (clamped to the month's last day) of the schedule's local calendar,
    at the preferred local time. Without one, the interval is added to
    ``completed_at``.

    Args:
        schedule: The connection's schedule
        completed_at: Timezone-aware completion time of the run

    Returns:
        datetime: Next due time in UTC, or None for manual schedules
    """
    if schedule.frequency == Frequency.MANUAL:
        return None

    if schedule.preferred_time is None:
        if schedule.frequency == Frequency.MONTHLY:
            return datetime.combine(
                _add_month(completed_at.date()), completed_at.timetz()
            ).astimezone(timezone.utc)
        return (completed_at + _INTERVALS[schedule.frequency]).astimezone(timezone.utc)

    zone = ZoneInfo(schedule.timezone)
    local_day = completed_at.astimezone(zone).date()
    next_day = _advance_date(local_day, schedule.frequency)
    preferred = time(
        schedule.preferred_time.hour,
        schedule.preferred_time.minute,
        schedule.preferred_time.second,
    )
    return datetime.combine(next_day, preferred, tzinfo=zone).astimezone(timezone.utc)


class Scheduler:
    """Cooperative asyncio service driving scheduled syncs."""

    def __init__(
        self,
        store: LedgerStore,
        orchestrator: SyncOrchestrator,
        settings: BankSyncSettings | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self._semaphore = asyncio.Semaphore(self.settings.scheduler.max_concurrent_sessions)
        self._in_flight: dict[str, asyncio.Task[SyncRun | None]] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> set[str]:
        """Connection ids with a dispatched run that has not completed."""
        return set(self._in_flight)

    def recover(self) -> None:
        """Seed the institution table and release runs interrupted by a crash."""
        self.store.upsert_institutions(available_institutions())
        reset = self.store.reset_interrupted_runs()
        if reset:
            logger.warning(f"Reset {reset} connection(s) left running by a previous process")

    async def start(self) -> None:
        """Recover and start the polling loop in the background."""
        if self._loop_task is not None:
            raise RuntimeError("Scheduler is already running")
        self.recover()
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._poll(), name="banksync-scheduler")
        logger.info(
            f"Scheduler started (tick {self.settings.scheduler.tick_interval_seconds:g}s, "
            f"{self.settings.scheduler.max_concurrent_sessions} concurrent session(s))"
        )

    async def stop(self, wait: bool = True) -> None:
        """Stop polling; optionally wait for in-flight runs to finish."""
        self._stopping.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._in_flight.values())
        if not wait:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def run_forever(self) -> None:
        """Start and block until the loop is cancelled."""
        await self.start()
        assert self._loop_task is not None  # noqa: S101
        try:
            await self._loop_task
        finally:
            await self.stop()

    async def _poll(self) -> None:
        interval = self.settings.scheduler.tick_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await self.clock.sleep(interval)

    async def tick(self) -> list[str]:
        """Select due connections and dispatch a run for each.

        Returns:
            list: Ids of the connections dispatched in this tick
        """
        now = self.clock.now()
        due = [
            connection
            for connection in self.store.find_due_connections(now)
            if connection.id not in self._in_flight
        ]
        if not due:
            return []

        logger.info(f"Dispatching {len(due)} due connection(s)")
        dispatched: list[str] = []
        for index, connection in enumerate(due):
            if index and self.settings.scheduler.stagger_seconds:
                await self.clock.sleep(self.settings.scheduler.stagger_seconds)
            if self._stopping.is_set():
                break
            self._dispatch(connection.id)
            dispatched.append(connection.id)
        return dispatched

    def _dispatch(self, connection_id: str) -> asyncio.Task[SyncRun | None]:
        task = asyncio.create_task(
            self._run_connection(connection_id), name=f"banksync-sync-{connection_id}"
        )
        self._in_flight[connection_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(connection_id, None))
        return task

    async def _run_connection(self, connection_id: str) -> SyncRun | None:
        async with self._semaphore:
            try:
                run = await self.orchestrator.run(connection_id)
            except ConnectionBusyError:
                logger.info(f"Connection {connection_id} is busy; skipping this tick")
                return None
            except Exception:
                logger.exception(f"Run for connection {connection_id} failed to start")
                return None

        self._advance(connection_id, run)
        return run

    def _advance(self, connection_id: str, run: SyncRun) -> None:
        schedule = self.store.get_schedule(connection_id)
        if schedule is None:
            return
        completed_at = run.finished_at or self.clock.now()
        next_run_at = compute_next_run(schedule, completed_at)
        succeeded_at = completed_at if run.status != SyncRunStatus.FAILED else None
        self.store.advance_schedule(connection_id, next_run_at, succeeded_at)
        logger.debug(f"Connection {connection_id} next due at {next_run_at}")
