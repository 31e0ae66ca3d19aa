"""Priority task queue with four independent lanes, retries and exponential backoff.

Each lane keeps its own jobs, lock and (when started) worker thread, so a slow
or hung handler in one lane never holds up another. Handlers are registered
per receiver and are called with a copy of the task message; whatever they
return becomes the job result.

Attempts per task are ``max_retries + 1``. Retry ``n`` waits
``base_delay * 2 ** (n - 1)`` seconds. A handler that runs past the message's
timeout is marked ``timeout`` and retried like a failure.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from newswire.models import (
    AttemptRecord,
    JobHandle,
    JobRecord,
    JobStatus,
    Priority,
    QueueSnapshot,
    TaskMessage,
    TaskStatus,
    utcnow,
)
from newswire.state import SnapshotFile

logger = logging.getLogger(__name__)

Handler = Callable[[TaskMessage], Any]


class TaskQueueError(RuntimeError):
    pass


@dataclass(frozen=True)
class LaneConfig:
    max_retries: int
    base_delay: float  # seconds
    keep_completed: int


DEFAULT_LANES: dict[Priority, LaneConfig] = {
    Priority.CRITICAL: LaneConfig(max_retries=3, base_delay=2.0, keep_completed=100),
    Priority.HIGH: LaneConfig(max_retries=3, base_delay=2.0, keep_completed=100),
    Priority.MEDIUM: LaneConfig(max_retries=3, base_delay=2.0, keep_completed=50),
    Priority.LOW: LaneConfig(max_retries=2, base_delay=3.0, keep_completed=20),
}
LANE_ORDER = (Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW)


class EventType(str, Enum):
    ENQUEUED = "enqueued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    STALLED = "stalled"
    TIMEOUT = "timeout"
    PAUSED = "paused"
    RESUMED = "resumed"
    CLEARED = "cleared"


@dataclass(frozen=True)
class QueueEvent:
    type: EventType
    lane: Priority
    job_id: str | None = None
    attempt: int = 0
    error: str | None = None
    delay: float | None = None
    result: Any = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class _Lane:
    priority: Priority
    config: LaneConfig
    jobs: dict[str, JobRecord] = field(default_factory=dict)
    paused: bool = False
    cond: threading.Condition = field(default_factory=threading.Condition)
    worker: threading.Thread | None = None


def _state(record: JobRecord, now: datetime) -> str:
    status = record.message.status
    if status is TaskStatus.PENDING:
        return "delayed" if record.available_at > now else "waiting"
    if status is TaskStatus.PROCESSING:
        return "active"
    if status is TaskStatus.COMPLETED:
        return "completed"
    return "failed"


class TaskQueue:
    def __init__(
        self,
        *,
        name: str = "agent-tasks",
        lanes: dict[Priority, LaneConfig] | None = None,
        snapshot: SnapshotFile[QueueSnapshot] | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        configs = {**DEFAULT_LANES, **(lanes or {})}
        self.name = name
        self._lanes = {p: _Lane(priority=p, config=configs[p]) for p in LANE_ORDER}
        self._handlers: dict[str, Handler] = {}
        self._observers: list[Callable[[QueueEvent], None]] = []
        self._snapshot = snapshot
        self._clock = clock
        self._sleep = sleep
        self._closed = False
        self._stopping = threading.Event()
        self._stats_lock = threading.Lock()
        self._stats = {
            "total_enqueued": 0,
            "total_completed": 0,
            "total_failed": 0,
            "total_retried": 0,
            "total_timeouts": 0,
            "total_stalled": 0,
        }

    # --- registration ---

    def register(self, receiver: str, handler: Handler) -> None:
        self._handlers[receiver] = handler

    def subscribe(self, observer: Callable[[QueueEvent], None]) -> Callable[[], None]:
        """Add an observer; returns a function that removes it again."""
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def _emit(self, event: QueueEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Queue observer failed on %s event", event.type.value)

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _lane(self, lane: Priority | str) -> _Lane:
        try:
            return self._lanes[Priority(lane)]
        except ValueError:
            raise TaskQueueError(f"Invalid priority lane: {lane!r}") from None

    # --- submission & lookup ---

    def submit(self, message: TaskMessage | dict) -> JobHandle:
        if self._closed:
            raise TaskQueueError("Task queue is closed")
        if not isinstance(message, TaskMessage):
            message = TaskMessage.model_validate(message)
        if message.status is not TaskStatus.PENDING:
            raise TaskQueueError(f"Task {message.id} is {message.status.value}, not pending")

        lane = self._lane(message.priority)
        if self._find(message.id) is not None:
            raise TaskQueueError(f"Duplicate task id: {message.id}")
        if message.max_retries is None:
            message.max_retries = lane.config.max_retries
        if self._snapshot is not None:
            try:
                message.model_dump_json()
            except ValueError as exc:
                raise TaskQueueError(f"Task {message.id} cannot be persisted: {exc}") from exc

        record = JobRecord(message=message, lane=lane.priority, available_at=self._clock())
        with lane.cond:
            lane.jobs[message.id] = record
            lane.cond.notify()
        self._count("total_enqueued")
        logger.info("Task %s added to %s lane", message.id, lane.priority.value)
        self._emit(QueueEvent(EventType.ENQUEUED, lane.priority, message.id, timestamp=self._clock()))
        self._persist()
        return JobHandle(job_id=message.id, lane=lane.priority, queue_name=f"{self.name}-{lane.priority.value}")

    def _find(self, job_id: str) -> tuple[_Lane, JobRecord] | None:
        for lane in self._lanes.values():
            with lane.cond:
                record = lane.jobs.get(job_id)
            if record is not None:
                return lane, record
        return None

    def get_status(self, job_id: str) -> JobStatus | None:
        found = self._find(job_id)
        if found is None:
            return None
        lane, record = found
        with lane.cond:
            return self._status(record)

    def _status(self, record: JobRecord) -> JobStatus:
        message = record.message
        state = _state(record, self._clock())
        return JobStatus(
            job_id=message.id,
            lane=record.lane,
            state=state,
            attempts_made=len(record.attempts),
            result=message.result if state == "completed" else None,
            failure_reason=message.error,
            attempts=[a.model_copy() for a in record.attempts],
            created_at=message.created_at,
            processed_at=message.processed_at,
            completed_at=message.completed_at,
        )

    def _list(self, predicate: Callable[[str], bool], limit: int | None = None) -> list[JobStatus]:
        now = self._clock()
        found: list[JobStatus] = []
        for lane in self._lanes.values():
            with lane.cond:
                found.extend(self._status(r) for r in lane.jobs.values() if predicate(_state(r, now)))
        return found[:limit] if limit is not None else found

    def failed_jobs(self, limit: int = 100) -> list[JobStatus]:
        return self._list(lambda s: s == "failed", limit)

    def active_jobs(self) -> list[JobStatus]:
        return self._list(lambda s: s == "active")

    def waiting_jobs(self) -> list[JobStatus]:
        return self._list(lambda s: s in ("waiting", "delayed"))

    # --- operator controls ---

    def retry(self, job_id: str) -> bool:
        """Re-queue a job that reached a terminal failure with a fresh retry budget."""
        found = self._find(job_id)
        if found is None:
            return False
        lane, record = found
        with lane.cond:
            state = _state(record, self._clock())
            if state != "failed":
                raise TaskQueueError(f"Job {job_id} is not in failed state (current: {state})")
            record.message.status = TaskStatus.PENDING
            record.message.retry_count = 0
            record.message.processed_at = None
            record.message.completed_at = None
            record.available_at = self._clock()
            lane.cond.notify()
        logger.info("Job %s retried", job_id)
        self._persist()
        return True

    def remove(self, job_id: str) -> bool:
        found = self._find(job_id)
        if found is None:
            return False
        lane, record = found
        with lane.cond:
            if record.message.status is TaskStatus.PROCESSING:
                raise TaskQueueError(f"Job {job_id} is active and cannot be removed")
            lane.jobs.pop(job_id, None)
        logger.info("Job %s removed", job_id)
        self._persist()
        return True

    def pause(self, lane: Priority | str) -> None:
        target = self._lane(lane)
        with target.cond:
            target.paused = True
        logger.info("Lane %s paused", target.priority.value)
        self._emit(QueueEvent(EventType.PAUSED, target.priority, timestamp=self._clock()))
        self._persist()

    def resume(self, lane: Priority | str) -> None:
        target = self._lane(lane)
        with target.cond:
            target.paused = False
            target.cond.notify_all()
        logger.info("Lane %s resumed", target.priority.value)
        self._emit(QueueEvent(EventType.RESUMED, target.priority, timestamp=self._clock()))
        self._persist()

    def pause_all(self) -> None:
        for priority in LANE_ORDER:
            self.pause(priority)

    def resume_all(self) -> None:
        for priority in LANE_ORDER:
            self.resume(priority)

    def is_paused(self, lane: Priority | str) -> bool:
        return self._lane(lane).paused

    def clean(
        self,
        lane: Priority | str | None = None,
        grace: float = 0.0,
        states: tuple[str, ...] = ("completed",),
    ) -> dict[str, int]:
        """Remove finished jobs in ``states`` that finished more than ``grace`` seconds ago."""
        cutoff = self._clock() - timedelta(seconds=grace)
        targets = [self._lane(lane)] if lane is not None else list(self._lanes.values())
        removed: dict[str, int] = {}
        for target in targets:
            with target.cond:
                doomed = [
                    job_id
                    for job_id, r in target.jobs.items()
                    if _state(r, cutoff) in states
                    and r.message.completed_at is not None
                    and r.message.completed_at <= cutoff
                ]
                for job_id in doomed:
                    del target.jobs[job_id]
            removed[target.priority.value] = len(doomed)
        logger.info("Cleaned %d jobs", sum(removed.values()))
        self._persist()
        return removed

    def clear(self, lane: Priority | str | None = None) -> int:
        """Drop every job that is not currently running."""
        targets = [self._lane(lane)] if lane is not None else list(self._lanes.values())
        count = 0
        for target in targets:
            with target.cond:
                doomed = [
                    job_id
                    for job_id, r in target.jobs.items()
                    if r.message.status is not TaskStatus.PROCESSING
                ]
                for job_id in doomed:
                    del target.jobs[job_id]
            count += len(doomed)
            self._emit(QueueEvent(EventType.CLEARED, target.priority, timestamp=self._clock()))
        self._persist()
        return count

    def stats(self) -> dict:
        now = self._clock()
        lanes = {}
        for lane in self._lanes.values():
            counts = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
            with lane.cond:
                for record in lane.jobs.values():
                    counts[_state(record, now)] += 1
                counts["paused"] = lane.paused
            lanes[lane.priority.value] = counts
        with self._stats_lock:
            totals = dict(self._stats)
        return {**totals, "lanes": lanes}

    def health(self) -> dict:
        stats = self.stats()
        workers = sum(1 for lane in self._lanes.values() if lane.worker and lane.worker.is_alive())
        paused = [name for name, counts in stats["lanes"].items() if counts["paused"]]
        if self._closed:
            status = "closed"
        elif paused:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "paused_lanes": paused, "workers_alive": workers, "lanes": stats["lanes"]}

    # --- execution ---

    def _next_ready(self, lane: _Lane, now: datetime) -> JobRecord | None:
        if lane.paused:
            return None
        for record in lane.jobs.values():
            if record.message.status is TaskStatus.PENDING and record.available_at <= now:
                record.message.mark_processing(now)
                return record
        return None

    def _next_wakeup(self, lane: _Lane) -> datetime | None:
        if lane.paused:
            return None
        pending = [r.available_at for r in lane.jobs.values() if r.message.status is TaskStatus.PENDING]
        return min(pending) if pending else None

    def run_until_idle(self, max_jobs: int | None = None) -> int:
        """Process jobs in the calling thread, highest lane first, until nothing is pending.

        Delayed retries are waited for with the injected ``sleep``.
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            now = self._clock()
            record = None
            for priority in LANE_ORDER:
                lane = self._lanes[priority]
                with lane.cond:
                    record = self._next_ready(lane, now)
                if record is not None:
                    self._execute(lane, record)
                    processed += 1
                    break
            if record is not None:
                continue
            wakeups = [w for w in (self._next_wakeup(lane) for lane in self._lanes.values()) if w]
            if not wakeups:
                return processed
            self._sleep(max(0.0, (min(wakeups) - now).total_seconds()))
        return processed

    def _execute(self, lane: _Lane, record: JobRecord) -> None:
        message = record.message
        started = message.processed_at or self._clock()
        attempt = AttemptRecord(attempt=len(record.attempts) + 1, started_at=started)
        with lane.cond:
            record.attempts.append(attempt)
        self._emit(QueueEvent(EventType.ACTIVE, lane.priority, message.id, attempt.attempt, timestamp=started))
        self._persist()

        handler = self._handlers.get(message.receiver)
        error: BaseException | None = None
        result = None
        timed_out = False
        retrying = False
        if handler is None:
            error = TaskQueueError(f"No handler registered for receiver {message.receiver!r}")
        else:
            try:
                result = self._call(handler, message.model_copy(deep=True), message.timeout)
            except FuturesTimeout:
                timed_out = True
            except Exception as exc:
                error = exc
            else:
                error = self._check_result(message, result)

        now = self._clock()
        with lane.cond:
            attempt.finished_at = now
            if not timed_out and error is None:
                message.mark_completed(result, now)
                attempt.status = TaskStatus.COMPLETED
                self._trim_completed(lane)
            else:
                if timed_out:
                    message.mark_timeout(now)
                else:
                    message.mark_failed(error, now)
                attempt.status = message.status
                attempt.error = message.error
                retrying = message.can_retry()
                if retrying:
                    message.reset_for_retry()
                    delay = message.retry_delay(lane.config.base_delay)
                    attempt.retry_delay = delay
                    record.available_at = now + timedelta(seconds=delay)
                lane.cond.notify()

        if not timed_out and error is None:
            self._count("total_completed")
            logger.info("[%s] Job %s completed", lane.priority.value, message.id)
            self._emit(
                QueueEvent(EventType.COMPLETED, lane.priority, message.id, attempt.attempt, result=result, timestamp=now)
            )
        else:
            if timed_out:
                self._count("total_timeouts")
                logger.warning("[%s] Job %s timed out after %gs", lane.priority.value, message.id, message.timeout)
                self._emit(
                    QueueEvent(EventType.TIMEOUT, lane.priority, message.id, attempt.attempt, attempt.error, timestamp=now)
                )
            if retrying:
                self._count("total_retried")
                logger.warning(
                    "[%s] Job %s attempt %d failed (%s); retrying in %gs",
                    lane.priority.value,
                    message.id,
                    attempt.attempt,
                    attempt.error,
                    attempt.retry_delay,
                )
                self._emit(
                    QueueEvent(
                        EventType.RETRYING,
                        lane.priority,
                        message.id,
                        attempt.attempt,
                        attempt.error,
                        delay=attempt.retry_delay,
                        timestamp=now,
                    )
                )
            else:
                self._count("total_failed")
                logger.error("[%s] Job %s failed: %s", lane.priority.value, message.id, attempt.error)
                self._emit(
                    QueueEvent(EventType.FAILED, lane.priority, message.id, attempt.attempt, attempt.error, timestamp=now)
                )
        self._persist()

    def _check_result(self, message: TaskMessage, result: Any) -> TaskQueueError | None:
        """A result the snapshot cannot hold fails the attempt instead of the queue."""
        if self._snapshot is None:
            return None
        try:
            message.model_copy(update={"result": result}).model_dump_json()
        except ValueError as exc:
            return TaskQueueError(f"Handler result is not JSON serializable: {exc}")
        return None

    @staticmethod
    def _call(handler: Handler, message: TaskMessage, timeout: float) -> Any:
        """Run ``handler`` on its own daemon thread and wait at most ``timeout`` seconds."""
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(handler(message))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=target, name=f"task-{message.id[:8]}", daemon=True).start()
        return future.result(timeout=timeout)

    def _trim_completed(self, lane: _Lane) -> None:
        completed = [
            job_id for job_id, r in lane.jobs.items() if r.message.status is TaskStatus.COMPLETED
        ]
        for job_id in completed[: max(0, len(completed) - lane.config.keep_completed)]:
            del lane.jobs[job_id]

    # --- worker threads ---

    def start(self) -> None:
        """Launch one worker thread per lane."""
        if self._closed:
            raise TaskQueueError("Task queue is closed")
        self._stopping.clear()
        for lane in self._lanes.values():
            if lane.worker is not None and lane.worker.is_alive():
                continue
            lane.worker = threading.Thread(
                target=self._work, args=(lane,), name=f"{self.name}-{lane.priority.value}", daemon=True
            )
            lane.worker.start()
        logger.info("Task queue workers started")

    def _work(self, lane: _Lane) -> None:
        while not self._stopping.is_set():
            with lane.cond:
                now = self._clock()
                record = self._next_ready(lane, now)
                if record is None:
                    wakeup = self._next_wakeup(lane)
                    wait = (wakeup - now).total_seconds() if wakeup else 1.0
                    lane.cond.wait(timeout=min(max(wait, 0.01), 1.0))
                    continue
            try:
                self._execute(lane, record)
            except Exception:
                logger.exception("[%s] Worker error while running job %s", lane.priority.value, record.message.id)

    def close(self, timeout: float = 5.0) -> None:
        self._closed = True
        self._stopping.set()
        for lane in self._lanes.values():
            with lane.cond:
                lane.cond.notify_all()
        for lane in self._lanes.values():
            if lane.worker is not None:
                lane.worker.join(timeout=timeout)
        self._persist()
        logger.info("Task queue closed")

    # --- durability ---

    def _persist(self) -> None:
        if self._snapshot is None:
            return
        jobs: list[JobRecord] = []
        paused: list[Priority] = []
        for lane in self._lanes.values():
            with lane.cond:
                jobs.extend(r.model_copy(deep=True) for r in lane.jobs.values())
                if lane.paused:
                    paused.append(lane.priority)
        try:
            self._snapshot.save(QueueSnapshot(jobs=jobs, paused=paused))
        except (OSError, ValueError):
            logger.exception("Could not persist queue snapshot to %s", self._snapshot.path)

    def load(self) -> int:
        """Restore jobs from the snapshot file; jobs caught mid-run are re-queued as stalled."""
        if self._snapshot is None:
            return 0
        snapshot = self._snapshot.load()
        now = self._clock()
        stalled = []
        for record in snapshot.jobs:
            lane = self._lanes[record.lane]
            if record.message.status is TaskStatus.PROCESSING:
                record.message.status = TaskStatus.PENDING
                record.message.processed_at = None
                record.available_at = now
                if record.attempts and record.attempts[-1].finished_at is None:
                    record.attempts[-1].finished_at = now
                    record.attempts[-1].status = TaskStatus.FAILED
                    record.attempts[-1].error = "stalled"
                stalled.append(record)
            lane.jobs[record.message.id] = record
        for priority in snapshot.paused:
            self._lanes[priority].paused = True
        for record in stalled:
            self._count("total_stalled")
            logger.warning("[%s] Job %s stalled; re-queued", record.lane.value, record.message.id)
            self._emit(QueueEvent(EventType.STALLED, record.lane, record.message.id, len(record.attempts), timestamp=now))
        if snapshot.jobs:
            logger.info("Restored %d queued jobs (%d stalled)", len(snapshot.jobs), len(stalled))
        return len(snapshot.jobs)
