"""
Job Registry - task definitions and their lifecycle

    created --resume--> started --suspend--> suspended --resume--> started
       \\________________________________________________/
                               drop -> dropped

A created task does not run until it is resumed.
"""

from __future__ import annotations
import logging
import threading
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from streamtask.exceptions import ConfigurationError
from streamtask.tasks.schedule import Schedule, as_utc

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    CREATED = "created"
    STARTED = "started"
    SUSPENDED = "suspended"
    DROPPED = "dropped"


@dataclass
class TaskDefinition:
    """A scheduled merge of one stream into one target table."""
    name: str
    stream: str
    target: str
    schedule: Schedule
    when_stream_has_data: bool = True
    timeout: Optional[float] = None
    comment: Optional[str] = None
    state: TaskState = TaskState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    next_run: Optional[datetime] = None

    @property
    def condition(self) -> Optional[str]:
        if self.when_stream_has_data:
            return f"STREAM_HAS_DATA('{self.stream}')"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "schedule": self.schedule.text,
            "stream": self.stream,
            "target": self.target,
            "condition": self.condition,
            "definition": f"MERGE {self.stream} INTO {self.target}",
            "timeout": self.timeout,
            "comment": self.comment,
            "created_at": self.created_at,
            "next_run": self.next_run,
        }


class JobRegistry:
    """
    Thread-safe registry of task definitions.

    Handed to the Scheduler explicitly; nothing reads it ambiently.
    """

    def __init__(self):
        self._tasks: Dict[str, TaskDefinition] = {}
        self._lock = threading.RLock()

    def create(self, task: TaskDefinition, replace: bool = False) -> TaskDefinition:
        """
        Register a new task in the created state.

        Raises:
            ConfigurationError: If the name is taken and ``replace`` is False
        """
        with self._lock:
            if task.name in self._tasks and not replace:
                raise ConfigurationError(f"Task already exists: {task.name}")
            task = dataclasses.replace(task, state=TaskState.CREATED, next_run=None)
            self._tasks[task.name] = task
            logger.info("Created task %s (schedule=%s)", task.name, task.schedule.text)
            return task

    def get(self, name: str) -> TaskDefinition:
        with self._lock:
            task = self._tasks.get(name)
            if task is None:
                raise ConfigurationError(f"Unknown task: {name}")
            return task

    def describe(self, name: str) -> Dict[str, Any]:
        return self.get(name).to_dict()

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._tasks

    def resume(self, name: str, now: datetime) -> TaskDefinition:
        """Start a created or suspended task; its first run is one schedule step after ``now``."""
        with self._lock:
            task = self.get(name)
            if task.state is TaskState.STARTED:
                return task
            task.state = TaskState.STARTED
            task.next_run = task.schedule.next_run(now)
            logger.info("Resumed task %s, next run at %s", name, task.next_run.isoformat())
            return task

    def suspend(self, name: str) -> TaskDefinition:
        """Stop scheduling a task without deleting it."""
        with self._lock:
            task = self.get(name)
            task.state = TaskState.SUSPENDED
            task.next_run = None
            logger.info("Suspended task %s", name)
            return task

    def drop(self, name: str) -> TaskDefinition:
        """Remove a task. The returned definition is in the dropped state."""
        with self._lock:
            task = self.get(name)
            del self._tasks[name]
            task.state = TaskState.DROPPED
            task.next_run = None
            logger.info("Dropped task %s", name)
            return task

    def list(self, state: TaskState = None) -> List[TaskDefinition]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.name)
            if state is not None:
                tasks = [t for t in tasks if t.state is state]
            return tasks

    def referencing(self, stream: str = None, table: str = None) -> List[TaskDefinition]:
        """Tasks that read ``stream`` or write ``table``."""
        with self._lock:
            return [
                t for t in self._tasks.values()
                if (stream is not None and t.stream == stream)
                or (table is not None and t.target == table)
            ]

    def due(self, now: datetime) -> List[TaskDefinition]:
        """Started tasks whose next run is at or before ``now``."""
        now = as_utc(now)
        with self._lock:
            return [
                t for t in self.list(TaskState.STARTED)
                if t.next_run is not None and t.next_run <= now
            ]

    def reschedule(self, name: str, now: datetime) -> Optional[datetime]:
        """Compute the next run after ``now`` for a started task."""
        with self._lock:
            task = self._tasks.get(name)
            if task is None or task.state is not TaskState.STARTED:
                return None
            task.next_run = task.schedule.next_run(now)
            return task.next_run

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
