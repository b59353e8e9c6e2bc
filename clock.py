from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger


logger = logging.getLogger(__name__)

Job = Callable[[], None]


class Clock(Protocol):
    """Time source plus trigger registration for the scheduler."""

    def now(self) -> datetime: ...

    def add_daily(self, job_id: str, func: Job, *, at: time) -> None: ...

    def add_interval(self, job_id: str, func: Job, *, hours: int) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class APSchedulerClock:
    def __init__(self, timezone: str) -> None:
        self.tz = ZoneInfo(timezone)
        self.scheduler = BackgroundScheduler(timezone=timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def add_daily(self, job_id: str, func: Job, *, at: time) -> None:
        self.scheduler.add_job(
            func,
            CronTrigger(hour=at.hour, minute=at.minute),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=3600,
        )

    def add_interval(self, job_id: str, func: Job, *, hours: int) -> None:
        self.scheduler.add_job(
            func,
            CronTrigger(hour=f"*/{hours}"),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=300,
        )

    def start(self) -> None:
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"clock_job: id={job.id} next_run={job.next_run_time}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("clock_stopped")


def _next_slot(after: datetime, hours: int) -> datetime:
    """First whole hour after ``after`` matched by the cron field ``*/hours``."""
    slot = after.replace(minute=0, second=0, microsecond=0)
    while True:
        slot += timedelta(hours=1)
        if slot.hour % hours == 0:
            return slot


@dataclass
class _ManualJob:
    job_id: str
    func: Job
    next_run: datetime
    at: Optional[time] = None
    hours: Optional[int] = None

    def reschedule(self) -> None:
        if self.hours is not None:
            self.next_run = _next_slot(self.next_run, self.hours)
        else:
            self.next_run = self.next_run + timedelta(days=1)


class ManualClock:
    """Virtual clock for tests; jobs only fire from :meth:`advance`."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self.jobs: dict[str, _ManualJob] = {}
        self.running = False

    def now(self) -> datetime:
        return self._now

    def add_daily(self, job_id: str, func: Job, *, at: time) -> None:
        first = self._now.replace(
            hour=at.hour, minute=at.minute, second=0, microsecond=0
        )
        if first <= self._now:
            first += timedelta(days=1)
        self.jobs[job_id] = _ManualJob(job_id, func, first, at=at)

    def add_interval(self, job_id: str, func: Job, *, hours: int) -> None:
        first = _next_slot(self._now, hours)
        self.jobs[job_id] = _ManualJob(job_id, func, first, hours=hours)

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def advance(self, delta: timedelta) -> list[str]:
        """Move time forward, firing due jobs in time order. Returns fired ids."""
        target = self._now + delta
        fired: list[str] = []
        while self.running:
            due = [job for job in self.jobs.values() if job.next_run <= target]
            if not due:
                break
            job = min(due, key=lambda j: j.next_run)
            self._now = job.next_run
            job.reschedule()
            fired.append(job.job_id)
            job.func()
        self._now = target
        return fired
