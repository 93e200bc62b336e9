"""
Scheduler - fires due tasks and records their runs

Each tick looks up started tasks whose next run has passed, evaluates the
stream-has-data condition and runs the task's merge pipeline. Failures are
recorded on the run and never stop the scheduler; a failed run is retried
on the task's next scheduled run.
"""

from __future__ import annotations
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from streamtask.exceptions import RECOVERABLE_ERRORS, StreamTaskError
from streamtask.merge import MergeResult
from streamtask.pipeline import MergePipeline
from streamtask.tasks.registry import JobRegistry, TaskDefinition
from streamtask.tasks.schedule import as_utc

logger = logging.getLogger(__name__)


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class RunState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskRun:
    """One execution (or skipped execution) of a task."""
    task: str
    run_id: str
    scheduled_at: datetime
    started_at: datetime
    completed_at: Optional[datetime] = None
    state: Optional[RunState] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    recoverable: bool = False
    result: Optional[MergeResult] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "run_id": self.run_id,
            "state": self.state.value if self.state else None,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "error_type": self.error_type,
            "recoverable": self.recoverable,
            "result": self.result.to_dict() if self.result else None,
            "reason": self.reason,
        }


class Scheduler:
    """
    Runs due tasks from a JobRegistry.

    Drive it manually with ``tick()`` (tests, external cron) or start the
    background loop with ``start()``. The clock is injectable so schedules
    can be tested without sleeping.

    Args:
        registry: Task definitions to schedule
        pipeline_factory: Builds the MergePipeline for a task definition
        clock: Returns the current time as an aware UTC datetime
        history_size: Number of TaskRun records kept
    """

    def __init__(
        self,
        registry: JobRegistry,
        pipeline_factory: Callable[[TaskDefinition], MergePipeline],
        clock: Callable[[], datetime] = None,
        history_size: int = 1000,
    ):
        self._registry = registry
        self._pipeline_factory = pipeline_factory
        self._clock = clock or _utc_clock
        self._history: Deque[TaskRun] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()
        self._task_locks: Dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def now(self) -> datetime:
        return as_utc(self._clock())

    # =========================================================================
    # Running tasks
    # =========================================================================

    def tick(self, now: datetime = None) -> List[TaskRun]:
        """
        Run every task that is due at ``now``.

        Each due task is rescheduled from ``now`` before it runs, so a slow
        run does not cause a burst of catch-up runs.

        Naive datetimes are taken as UTC.

        Returns:
            The runs performed in this tick (possibly empty)
        """
        now = as_utc(now) if now is not None else self.now()
        runs = []
        for task in self._registry.due(now):
            scheduled_at = task.next_run
            self._registry.reschedule(task.name, now)
            run = self._run(task, scheduled_at)
            if run is not None:
                runs.append(run)
        return runs

    def execute(self, name: str) -> Optional[TaskRun]:
        """
        Run a task once, now, regardless of its schedule or state.

        Returns None if a run of the same task is already in progress.

        Raises:
            ConfigurationError: If the task does not exist
        """
        task = self._registry.get(name)
        return self._run(task, self.now())

    def _task_lock(self, name: str) -> threading.Lock:
        with self._task_locks_guard:
            lock = self._task_locks.get(name)
            if lock is None:
                lock = self._task_locks[name] = threading.Lock()
            return lock

    def _run(self, task: TaskDefinition, scheduled_at: datetime) -> Optional[TaskRun]:
        lock = self._task_lock(task.name)
        if not lock.acquire(blocking=False):
            logger.info("Task %s is still running; skipping overlapping run", task.name)
            return None

        try:
            run = TaskRun(
                task=task.name,
                run_id=uuid.uuid4().hex,
                scheduled_at=scheduled_at,
                started_at=self.now(),
            )
            try:
                pipeline = self._pipeline_factory(task)
                if task.when_stream_has_data and not pipeline.has_data():
                    run.state = RunState.SKIPPED
                    run.reason = "stream has no data"
                    logger.debug("Task %s skipped: stream %s has no data", task.name, task.stream)
                else:
                    deadline = time.monotonic() + task.timeout if task.timeout else None
                    run.result = pipeline.run(deadline=deadline)
                    run.state = RunState.SUCCEEDED
                    logger.info("Task %s succeeded: %s", task.name, run.result.to_dict())
            except RECOVERABLE_ERRORS as e:
                self._fail(run, e, recoverable=True)
                logger.warning("Task %s failed, will retry on next run: %s", task.name, e)
            except StreamTaskError as e:
                self._fail(run, e)
                logger.error("Task %s failed: %s", task.name, e)
            except Exception as e:
                self._fail(run, e)
                logger.exception("Task %s failed with unexpected error", task.name)

            run.completed_at = self.now()
            with self._history_lock:
                self._history.append(run)
            return run
        finally:
            lock.release()

    @staticmethod
    def _fail(run: TaskRun, error: Exception, recoverable: bool = False):
        run.state = RunState.FAILED
        run.error = str(error)
        run.error_type = type(error).__name__
        run.recoverable = recoverable

    # =========================================================================
    # History
    # =========================================================================

    def history(
        self,
        task: str = None,
        since: datetime = None,
        state: RunState = None,
    ) -> List[TaskRun]:
        """Recorded runs, oldest first, optionally filtered."""
        with self._history_lock:
            runs = list(self._history)
        if task is not None:
            runs = [r for r in runs if r.task == task]
        if since is not None:
            since = as_utc(since)
            runs = [r for r in runs if r.started_at >= since]
        if state is not None:
            runs = [r for r in runs if r.state is state]
        return runs

    # =========================================================================
    # Background loop
    # =========================================================================

    def start(self, poll_interval: float = 1.0):
        """Start ticking in a daemon thread every ``poll_interval`` seconds."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(poll_interval,),
            name="streamtask-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler started (poll interval %.2fs)", poll_interval)

    def _loop(self, poll_interval: float):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(poll_interval)

    def stop(self, timeout: float = None):
        """Stop the background loop and wait for the current tick to finish."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    def __repr__(self) -> str:
        state = "running" if self.running else "stopped"
        return f"<Scheduler tasks={len(self._registry)} {state}>"
