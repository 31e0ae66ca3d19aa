"""Tests for cron parsing and the job scheduler."""

from datetime import datetime, timezone

import pytest

from conftest import NOW
from newswire.scheduler import CronSchedule, Scheduler, SchedulerError


def _at(month, day, hour=0, minute=0):
    return datetime(2026, month, day, hour, minute, tzinfo=timezone.utc)


# --- cron expressions ---


def test_parse_fields():
    cron = CronSchedule.parse("*/15 9-17 * * 1-5")
    assert cron.minutes == {0, 15, 30, 45}
    assert cron.hours == set(range(9, 18))
    assert cron.weekdays == {1, 2, 3, 4, 5}
    assert cron.any_day and not cron.any_weekday


def test_parse_lists_and_offset_steps():
    assert CronSchedule.parse("5/20 * * * *").minutes == {5, 25, 45}
    assert CronSchedule.parse("0,30 * * * *").minutes == {0, 30}
    assert CronSchedule.parse("0 0-12/6 * * *").hours == {0, 6, 12}
    assert CronSchedule.parse("50/1 * * * *").minutes == set(range(50, 60))


def test_sunday_can_be_seven():
    assert CronSchedule.parse("0 0 * * 7").weekdays == {0}


@pytest.mark.parametrize(
    "expression",
    ["* * *", "61 * * * *", "*/0 * * * *", "a * * * *", "5-2 * * * *", "0 0 0 * *", "0 0 * 13 *"],
)
def test_invalid_expressions(expression):
    with pytest.raises(ValueError):
        CronSchedule.parse(expression)


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("0 * * * *", _at(3, 2, 13)),
        ("0 3 * * *", _at(3, 3, 3)),
        ("0 0 1 * *", _at(4, 1)),
        ("30 9 * * 1-5", _at(3, 3, 9, 30)),
        ("0 0 * * 0", _at(3, 8)),
        ("*/15 * * * *", _at(3, 2, 12, 15)),
    ],
)
def test_next_after(expression, expected):
    # NOW is Monday 2026-03-02 12:00 UTC.
    assert CronSchedule.parse(expression).next_after(NOW) == expected


def test_next_after_crosses_year():
    assert CronSchedule.parse("0 0 1 1 *").next_after(NOW) == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_day_and_weekday_match_either():
    cron = CronSchedule.parse("0 0 15 * 1")
    assert cron.next_after(NOW) == _at(3, 9)
    assert cron.matches(_at(3, 15))
    assert cron.matches(_at(3, 9))
    assert not cron.matches(_at(3, 10))


def test_restricted_day_with_any_weekday():
    cron = CronSchedule.parse("0 0 15 * *")
    assert cron.matches(_at(3, 15))
    assert not cron.matches(_at(3, 9))


def test_impossible_date_never_fires():
    with pytest.raises(ValueError):
        CronSchedule.parse("0 0 30 2 *").next_after(NOW)


# --- scheduler ---


@pytest.fixture
def scheduler(clock) -> Scheduler:
    return Scheduler(clock=clock)


def test_add_job_computes_next_run(scheduler):
    job = scheduler.add_job("hourly", "0 * * * *", lambda: None, "every hour")
    assert job.next_run == _at(3, 2, 13)
    assert scheduler.jobs == ["hourly"]
    assert scheduler.seconds_until_next() == 3600.0


def test_run_pending_runs_due_jobs(scheduler, clock):
    calls = []
    scheduler.add_job("hourly", "0 * * * *", lambda: calls.append(clock.now))
    assert scheduler.run_pending() == []

    clock.advance(3600)
    assert scheduler.run_pending() == ["hourly"]
    assert calls == [_at(3, 2, 13)]
    job_info = scheduler.stats()["jobs"]["hourly"]
    assert job_info["runs"] == 1
    assert job_info["next_run"] == _at(3, 2, 14).isoformat()

    assert scheduler.run_pending() == []


def test_missed_runs_fire_once(scheduler, clock):
    calls = []
    scheduler.add_job("hourly", "0 * * * *", lambda: calls.append(1))
    clock.advance(5 * 3600)
    scheduler.run_pending()
    assert calls == [1]


def test_failing_job_is_recorded_not_raised(scheduler, clock):
    def boom():
        raise RuntimeError("fetch failed")

    scheduler.add_job("fetch", "0 * * * *", boom)
    clock.advance(3600)
    assert scheduler.run_pending() == ["fetch"]
    stats = scheduler.stats()
    assert stats["failed_runs"] == 1
    assert stats["last_error"]["error"] == "fetch failed"
    assert stats["last_success"] is None


def test_trigger_runs_immediately(scheduler):
    job = scheduler.add_job("cleanup", "0 3 * * *", lambda: 7)
    next_run = job.next_run
    assert scheduler.trigger("cleanup") == 7
    assert job.next_run == next_run
    assert job.successes == 1
    assert job.last_success == NOW


def test_trigger_propagates_errors(scheduler):
    def boom():
        raise RuntimeError("quota API down")

    scheduler.add_job("quota-reset", "0 0 1 * *", boom)
    with pytest.raises(RuntimeError):
        scheduler.trigger("quota-reset")
    assert scheduler.stats()["failed_runs"] == 1


def test_unknown_jobs(scheduler):
    with pytest.raises(SchedulerError):
        scheduler.trigger("nope")
    with pytest.raises(KeyError):
        scheduler.remove_job("nope")
    with pytest.raises(SchedulerError):
        scheduler.reschedule("nope", "* * * * *")


def test_reschedule_and_remove(scheduler):
    scheduler.add_job("fetch", "0 * * * *", lambda: None)
    job = scheduler.reschedule("fetch", "*/5 * * * *")
    assert job.next_run == _at(3, 2, 12, 5)

    scheduler.remove_job("fetch")
    assert scheduler.jobs == []
    assert scheduler.seconds_until_next() is None


def test_stats(scheduler, clock):
    scheduler.add_job("a", "0 * * * *", lambda: None)
    scheduler.add_job("b", "0 3 * * *", lambda: None)
    scheduler.trigger("a")
    stats = scheduler.stats()
    assert stats["total_runs"] == 1
    assert stats["successful_runs"] == 1
    assert stats["job_count"] == 2
    assert stats["active_jobs"] == ["a", "b"]
    assert stats["last_run"] == NOW.isoformat()
    assert stats["jobs"]["b"]["schedule"] == "0 3 * * *"


def test_start_and_stop():
    scheduler = Scheduler()
    scheduler.add_job("yearly", "0 0 1 1 *", lambda: None)
    scheduler.start()
    scheduler.stop(timeout=2)
    assert scheduler.stats()["total_runs"] == 0
