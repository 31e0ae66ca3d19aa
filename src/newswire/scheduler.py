"""Cron-style scheduler for recurring jobs, with manual out-of-band triggers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from newswire.models import utcnow

logger = logging.getLogger(__name__)


class SchedulerError(KeyError):
    """Unknown job name."""


def _parse_field(text: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"Invalid cron step: {step_text!r}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(part)
            end = high if stepped else start
        if start < low or end > high or start > end:
            raise ValueError(f"Cron value out of range {low}-{high}: {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    """Five-field cron expression: minute hour day-of-month month day-of-week (UTC)."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    any_day: bool
    any_weekday: bool

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"Cron expression needs 5 fields: {expression!r}")
        minute, hour, day, month, weekday = fields
        weekdays = _parse_field(weekday, 0, 7)
        # Both 0 and 7 mean Sunday.
        if 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}
        return cls(
            expression=expression,
            minutes=_parse_field(minute, 0, 59),
            hours=_parse_field(hour, 0, 23),
            days=_parse_field(day, 1, 31),
            months=_parse_field(month, 1, 12),
            weekdays=weekdays,
            any_day=day == "*",
            any_weekday=weekday == "*",
        )

    def _day_matches(self, dt: datetime) -> bool:
        cron_weekday = (dt.weekday() + 1) % 7
        day_ok = dt.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        # Classic cron: when both are restricted, either one may match.
        if not self.any_day and not self.any_weekday:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, dt: datetime) -> datetime:
        """First matching minute strictly after ``dt``."""
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=366 * 5)
        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ValueError(f"Cron expression never fires: {self.expression!r}")


@dataclass
class ScheduledJob:
    name: str
    schedule: CronSchedule
    func: Callable[[], Any]
    description: str = ""
    next_run: datetime | None = None
    runs: int = 0
    successes: int = 0
    failures: int = 0
    last_run: datetime | None = None
    last_success: datetime | None = None
    last_error: dict | None = None
    running: threading.Lock = field(default_factory=threading.Lock)

    def info(self) -> dict:
        return {
            "name": self.name,
            "schedule": self.schedule.expression,
            "description": self.description,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "runs": self.runs,
            "successes": self.successes,
            "failures": self.failures,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
        }


class Scheduler:
    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def jobs(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def add_job(
        self,
        name: str,
        expression: str,
        func: Callable[[], Any],
        description: str = "",
    ) -> ScheduledJob:
        schedule = CronSchedule.parse(expression)
        job = ScheduledJob(
            name=name,
            schedule=schedule,
            func=func,
            description=description,
            next_run=schedule.next_after(self._clock()),
        )
        with self._lock:
            self._jobs[name] = job
        logger.info("Scheduled %s: %s (next run %s)", name, expression, job.next_run)
        return job

    def _get(self, name: str) -> ScheduledJob:
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise SchedulerError(f"Unknown job: {name}")
        return job

    def remove_job(self, name: str) -> None:
        with self._lock:
            if self._jobs.pop(name, None) is None:
                raise SchedulerError(f"Unknown job: {name}")

    def reschedule(self, name: str, expression: str) -> ScheduledJob:
        job = self._get(name)
        job.schedule = CronSchedule.parse(expression)
        job.next_run = job.schedule.next_after(self._clock())
        logger.info("Rescheduled %s to %s", name, expression)
        return job

    def trigger(self, name: str) -> Any:
        """Run ``name`` now, outside its schedule. Errors propagate to the caller."""
        return self._run(self._get(name), raise_errors=True)

    def _run(self, job: ScheduledJob, *, raise_errors: bool = False) -> Any:
        with job.running:
            started = self._clock()
            job.runs += 1
            job.last_run = started
            logger.info("Running job %s", job.name)
            try:
                result = job.func()
            except Exception as exc:
                job.failures += 1
                job.last_error = {"timestamp": self._clock().isoformat(), "error": str(exc)}
                logger.exception("Job %s failed", job.name)
                if raise_errors:
                    raise
                return None
            job.successes += 1
            job.last_success = self._clock()
            logger.info("Job %s completed in %.1fs", job.name, (job.last_success - started).total_seconds())
            return result

    def run_pending(self, now: datetime | None = None) -> list[str]:
        """Run every job whose next run time has passed; returns the names run."""
        now = now or self._clock()
        with self._lock:
            due = [j for j in self._jobs.values() if j.next_run is not None and j.next_run <= now]
        for job in due:
            job.next_run = job.schedule.next_after(now)
            self._run(job)
        return [j.name for j in due]

    def seconds_until_next(self) -> float | None:
        with self._lock:
            upcoming = [j.next_run for j in self._jobs.values() if j.next_run is not None]
        if not upcoming:
            return None
        return max(0.0, (min(upcoming) - self._clock()).total_seconds())

    def run_forever(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            wait = self.seconds_until_next()
            self._stop.wait(timeout=min(wait, 60.0) if wait is not None else 60.0)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def stats(self) -> dict:
        with self._lock:
            jobs = list(self._jobs.values())
        last_runs = [j.last_run for j in jobs if j.last_run]
        last_successes = [j.last_success for j in jobs if j.last_success]
        errors = [j.last_error for j in jobs if j.last_error]
        return {
            "total_runs": sum(j.runs for j in jobs),
            "successful_runs": sum(j.successes for j in jobs),
            "failed_runs": sum(j.failures for j in jobs),
            "last_run": max(last_runs).isoformat() if last_runs else None,
            "last_success": max(last_successes).isoformat() if last_successes else None,
            "last_error": max(errors, key=lambda e: e["timestamp"]) if errors else None,
            "active_jobs": [j.name for j in jobs],
            "job_count": len(jobs),
            "jobs": {j.name: j.info() for j in jobs},
        }
