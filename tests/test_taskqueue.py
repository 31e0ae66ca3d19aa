"""Tests for the priority task queue."""

import threading

import pytest
from pydantic import ValidationError

from conftest import NOW
from newswire.models import (
    AttemptRecord,
    JobRecord,
    MessageType,
    Priority,
    QueueSnapshot,
    TaskMessage,
    TaskStatus,
)
from newswire.state import SnapshotFile
from newswire.taskqueue import EventType, LaneConfig, TaskQueue, TaskQueueError


def _message(receiver="worker", priority=Priority.MEDIUM, **kwargs) -> TaskMessage:
    return TaskMessage(sender="tests", receiver=receiver, type=MessageType.TASK, priority=priority, **kwargs)


@pytest.fixture
def queue(clock) -> TaskQueue:
    q = TaskQueue(clock=clock, sleep=clock.sleep)
    q.register("worker", lambda m: {"echo": m.payload})
    return q


def _failing(message):
    raise RuntimeError("upstream exploded")


def _events(queue):
    seen = []
    queue.subscribe(seen.append)
    return seen


# --- execution ---


def test_job_completes_with_handler_result(queue):
    handle = queue.submit(_message(payload={"n": 1}))
    assert handle.queue_name == "agent-tasks-medium"
    assert queue.get_status(handle.job_id).state == "waiting"

    assert queue.run_until_idle() == 1
    status = queue.get_status(handle.job_id)
    assert status.state == "completed"
    assert status.result == {"echo": {"n": 1}}
    assert status.attempts_made == 1
    assert status.completed_at == NOW


def test_handler_receives_a_copy(queue):
    message = _message(payload={"n": 1})

    def mutate(m):
        m.payload["n"] = 99

    queue.register("mutator", mutate)
    message.receiver = "mutator"
    queue.submit(message)
    queue.run_until_idle()
    assert message.payload == {"n": 1}


def test_lanes_run_highest_priority_first(queue):
    order = []
    queue.register("rec", lambda m: order.append(m.priority.value))
    for priority in (Priority.LOW, Priority.MEDIUM, Priority.CRITICAL, Priority.HIGH):
        queue.submit(_message("rec", priority))
    queue.run_until_idle()
    assert order == ["critical", "high", "medium", "low"]


def test_critical_retries_with_exponential_backoff(queue, clock):
    queue.register("flaky", _failing)
    seen = _events(queue)
    handle = queue.submit(_message("flaky", Priority.CRITICAL))

    assert queue.run_until_idle() == 4
    assert clock.sleeps == [2.0, 4.0, 8.0]
    status = queue.get_status(handle.job_id)
    assert status.state == "failed"
    assert status.failure_reason == "upstream exploded"
    assert [a.retry_delay for a in status.attempts] == [2.0, 4.0, 8.0, None]

    retrying = [e for e in seen if e.type is EventType.RETRYING]
    assert [e.delay for e in retrying] == [2.0, 4.0, 8.0]
    assert seen[-1].type is EventType.FAILED
    assert queue.stats()["total_retried"] == 3
    assert queue.stats()["total_failed"] == 1


def test_low_lane_has_smaller_budget(queue, clock):
    queue.register("flaky", _failing)
    handle = queue.submit(_message("flaky", Priority.LOW))
    queue.run_until_idle()
    assert clock.sleeps == [3.0, 6.0]
    assert queue.get_status(handle.job_id).attempts_made == 3


def test_message_max_retries_overrides_lane(queue):
    queue.register("flaky", _failing)
    handle = queue.submit(_message("flaky", Priority.HIGH, max_retries=0))
    assert queue.run_until_idle() == 1
    assert queue.get_status(handle.job_id).state == "failed"


def test_success_after_retry(queue, clock):
    calls = []

    def second_time_lucky(message):
        calls.append(message.retry_count)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return "ok"

    queue.register("lucky", second_time_lucky)
    handle = queue.submit(_message("lucky", Priority.HIGH))
    queue.run_until_idle()
    assert calls == [0, 1]
    status = queue.get_status(handle.job_id)
    assert status.state == "completed"
    assert status.result == "ok"
    assert status.failure_reason is None


def test_handler_timeout(queue):
    gate = threading.Event()
    queue.register("slow", lambda m: gate.wait(5))
    seen = _events(queue)
    handle = queue.submit(_message("slow", Priority.HIGH, timeout=0.1, max_retries=0))
    try:
        queue.run_until_idle()
    finally:
        gate.set()
    status = queue.get_status(handle.job_id)
    assert status.state == "failed"
    assert status.attempts[0].status is TaskStatus.TIMEOUT
    assert "timeout" in status.failure_reason
    assert [e.type for e in seen[-2:]] == [EventType.TIMEOUT, EventType.FAILED]
    assert queue.stats()["total_timeouts"] == 1


def test_missing_handler_fails_job(queue):
    handle = queue.submit(_message("ghost", max_retries=0))
    queue.run_until_idle()
    status = queue.get_status(handle.job_id)
    assert status.state == "failed"
    assert "ghost" in status.failure_reason


def test_event_sequence(queue):
    seen = _events(queue)
    handle = queue.submit(_message())
    queue.run_until_idle()
    assert [e.type for e in seen] == [EventType.ENQUEUED, EventType.ACTIVE, EventType.COMPLETED]
    assert all(e.job_id == handle.job_id for e in seen)
    assert seen[-1].result == {"echo": {}}


def test_broken_observer_does_not_stop_processing(queue):
    def explode(event):
        raise ValueError("observer bug")

    unsubscribe = queue.subscribe(explode)
    handle = queue.submit(_message())
    queue.run_until_idle()
    assert queue.get_status(handle.job_id).state == "completed"
    unsubscribe()


def test_completed_jobs_are_trimmed(clock):
    queue = TaskQueue(lanes={Priority.LOW: LaneConfig(max_retries=0, base_delay=1.0, keep_completed=1)}, clock=clock)
    queue.register("worker", lambda m: None)
    for _ in range(3):
        queue.submit(_message(priority=Priority.LOW))
    queue.run_until_idle()
    assert queue.stats()["lanes"]["low"]["completed"] == 1


# --- submission ---


def test_submit_validates_messages(queue):
    with pytest.raises(ValidationError):
        queue.submit({"sender": "", "receiver": "worker", "type": "task"})
    with pytest.raises(ValidationError):
        queue.submit({"sender": "a", "receiver": "worker", "type": "task", "priority": "urgent"})

    handle = queue.submit({"sender": "a", "receiver": "worker", "type": "task", "priority": "high"})
    assert handle.lane is Priority.HIGH


def test_submit_rejects_duplicates_and_non_pending(queue):
    message = _message()
    queue.submit(message)
    with pytest.raises(TaskQueueError):
        queue.submit(message)

    done = _message()
    done.mark_completed("x")
    with pytest.raises(TaskQueueError):
        queue.submit(done)


def test_submit_after_close(queue):
    queue.close()
    with pytest.raises(TaskQueueError):
        queue.submit(_message())
    assert queue.health()["status"] == "closed"


def test_unknown_lane(queue):
    with pytest.raises(TaskQueueError):
        queue.pause("urgent")


# --- operator controls ---


def test_retry_failed_job(queue):
    queue.register("flaky", _failing)
    handle = queue.submit(_message("flaky", max_retries=0))
    queue.run_until_idle()

    queue.register("flaky", lambda m: "fixed")
    assert queue.retry(handle.job_id)
    queue.run_until_idle()
    status = queue.get_status(handle.job_id)
    assert status.state == "completed"
    assert status.attempts_made == 2

    with pytest.raises(TaskQueueError):
        queue.retry(handle.job_id)
    assert not queue.retry("missing")


def test_remove(queue):
    handle = queue.submit(_message())
    assert queue.remove(handle.job_id)
    assert queue.get_status(handle.job_id) is None
    assert not queue.remove(handle.job_id)


def test_pause_and_resume_lane(queue):
    queue.pause(Priority.HIGH)
    handle = queue.submit(_message(priority=Priority.HIGH))
    assert queue.run_until_idle() == 0
    assert queue.is_paused("high")
    assert queue.health()["status"] == "degraded"
    assert queue.health()["paused_lanes"] == ["high"]

    queue.resume("high")
    assert queue.run_until_idle() == 1
    assert queue.get_status(handle.job_id).state == "completed"


def test_pause_all_and_resume_all(queue):
    queue.pause_all()
    assert all(queue.is_paused(p) for p in Priority)
    queue.resume_all()
    assert queue.health()["status"] == "healthy"


def test_clean_respects_grace(queue, clock):
    queue.submit(_message())
    queue.run_until_idle()
    assert queue.clean(grace=60)["medium"] == 0
    clock.advance(120)
    assert queue.clean(grace=60) == {"critical": 0, "high": 0, "medium": 1, "low": 0}


def test_clear(queue):
    queue.submit(_message())
    queue.submit(_message(priority=Priority.LOW))
    assert queue.clear() == 2
    assert queue.waiting_jobs() == []


def test_listing_and_stats(queue):
    queue.register("flaky", _failing)
    queue.submit(_message("flaky", max_retries=0))
    queue.submit(_message(priority=Priority.LOW))
    queue.run_until_idle(max_jobs=1)
    assert len(queue.failed_jobs()) == 1
    assert len(queue.waiting_jobs()) == 1
    assert queue.active_jobs() == []

    stats = queue.stats()
    assert stats["total_enqueued"] == 2
    assert stats["lanes"]["medium"]["failed"] == 1
    assert stats["lanes"]["low"]["waiting"] == 1


# --- durability ---


def test_snapshot_survives_restart(tmp_path, clock):
    snapshot = SnapshotFile(tmp_path / "queue.json", QueueSnapshot)
    first = TaskQueue(snapshot=snapshot, clock=clock)
    handle = first.submit(_message())
    first.pause(Priority.LOW)

    second = TaskQueue(snapshot=snapshot, clock=clock)
    assert second.load() == 1
    assert second.get_status(handle.job_id).state == "waiting"
    assert second.is_paused(Priority.LOW)


def test_stalled_jobs_are_requeued(tmp_path, clock):
    snapshot = SnapshotFile(tmp_path / "queue.json", QueueSnapshot)
    message = _message(priority=Priority.HIGH)
    message.mark_processing(NOW)
    snapshot.save(
        QueueSnapshot(
            jobs=[
                JobRecord(
                    message=message,
                    lane=Priority.HIGH,
                    attempts=[AttemptRecord(attempt=1, started_at=NOW)],
                )
            ]
        )
    )

    queue = TaskQueue(snapshot=snapshot, clock=clock)
    seen = _events(queue)
    queue.register("worker", lambda m: "done")
    queue.load()
    assert seen[0].type is EventType.STALLED
    assert queue.stats()["total_stalled"] == 1

    queue.run_until_idle()
    status = queue.get_status(message.id)
    assert status.state == "completed"
    assert status.attempts[0].error == "stalled"
    assert status.attempts_made == 2


def test_load_without_snapshot(queue):
    assert queue.load() == 0


class _Opaque:
    pass


def test_unpersistable_payload_is_rejected_before_enqueue(tmp_path, clock):
    queue = TaskQueue(snapshot=SnapshotFile(tmp_path / "queue.json", QueueSnapshot), clock=clock)
    message = _message(payload={"obj": _Opaque()})
    with pytest.raises(TaskQueueError, match="cannot be persisted"):
        queue.submit(message)
    assert queue.get_status(message.id) is None
    assert queue.stats()["total_enqueued"] == 0


def test_unpersistable_result_fails_the_job(tmp_path, clock):
    snapshot = SnapshotFile(tmp_path / "queue.json", QueueSnapshot)
    queue = TaskQueue(snapshot=snapshot, clock=clock, sleep=clock.sleep)
    queue.register("worker", lambda m: _Opaque())
    handle = queue.submit(_message(max_retries=0))

    assert queue.run_until_idle() == 1
    status = queue.get_status(handle.job_id)
    assert status.state == "failed"
    assert "not JSON serializable" in status.failure_reason
    assert snapshot.load().jobs[0].message.status is TaskStatus.FAILED



# --- worker threads ---


def test_worker_threads_process_jobs():
    done = threading.Event()
    queue = TaskQueue()
    queue.register("worker", lambda m: done.set())
    queue.start()
    try:
        handle = queue.submit(_message(priority=Priority.CRITICAL))
        assert done.wait(5)
        assert queue.health()["workers_alive"] == 4
    finally:
        queue.close()
    assert queue.get_status(handle.job_id).state == "completed"


def test_hung_lane_does_not_block_other_lanes():
    gate = threading.Event()
    low_started = threading.Event()
    critical_done = threading.Event()

    def hang(message):
        low_started.set()
        gate.wait(5)

    queue = TaskQueue()
    queue.register("slow", hang)
    queue.register("fast", lambda m: critical_done.set())
    queue.start()
    try:
        low = queue.submit(_message("slow", Priority.LOW))
        assert low_started.wait(5)
        critical = queue.submit(_message("fast", Priority.CRITICAL))
        assert critical_done.wait(5)
        assert queue.get_status(low.job_id).state == "active"
    finally:
        gate.set()
        queue.close()
    assert queue.get_status(critical.job_id).state == "completed"


def test_worker_survives_an_execution_error(monkeypatch):
    done = threading.Event()
    queue = TaskQueue()
    queue.register("worker", lambda m: done.set())
    execute = queue._execute
    calls = []

    def flaky_execute(lane, record):
        calls.append(record.message.id)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        execute(lane, record)

    monkeypatch.setattr(queue, "_execute", flaky_execute)
    queue.start()
    try:
        queue.submit(_message(priority=Priority.HIGH))
        second = queue.submit(_message(priority=Priority.HIGH))
        assert done.wait(5)
        assert queue.health()["workers_alive"] == 4
    finally:
        queue.close()
    assert queue.get_status(second.job_id).state == "completed"
