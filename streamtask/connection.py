"""
StreamTask Connection - tables, streams and tasks over one DuckDB database

Wires the engine together:

    TableStore -> ChangeLog (per source table) -> ChangeView -> MergePipeline
    CursorStore (per stream)       JobRegistry -> Scheduler
"""

from __future__ import annotations
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import pyarrow as pa

from streamtask.cdc.cursors import CursorStore
from streamtask.cdc.log import ChangeLog
from streamtask.cdc.view import ChangeView, Stream
from streamtask.config import StreamTaskConfig
from streamtask.connection_base import ConnectionMixin
from streamtask.exceptions import ConfigurationError, StorageError
from streamtask.merge import MergeApplier
from streamtask.mutations import Delete, Insert, Update
from streamtask.pipeline import MergePipeline
from streamtask.schema import TableSchema
from streamtask.store import Mutation, TableStore
from streamtask.tasks.registry import JobRegistry, TaskDefinition, TaskState
from streamtask.tasks.schedule import Schedule, parse_schedule
from streamtask.tasks.scheduler import RunState, Scheduler, TaskRun

logger = logging.getLogger(__name__)


class StreamTaskConnection(ConnectionMixin):
    """
    Connection to a StreamTask database.

    Provides:
    - Source and target tables with keyed mutations
    - Streams: per-consumer change views over a table's change log
    - Tasks: scheduled merges of a stream into a target table

    Example:
        conn = streamtask.connect()
        conn.create_table("students", {...}, primary_key="student_id")
        conn.create_stream("students_stream", on_table="students")
        conn.create_task("students_task", "5 minute", "students_stream", "prod_students")
        conn.resume_task("students_task")
    """

    def __init__(
        self,
        connection_string: str = None,
        *,
        config: StreamTaskConfig = None,
        clock: Callable[[], datetime] = None,
        **kwargs,
    ):
        self._config = self.resolve_config(connection_string, config, **kwargs)
        self._closed = False

        self._store = TableStore(self._config.database, read_only=self._config.read_only)
        self._cursors = CursorStore(self._store, cas_retries=self._config.cas_retries)
        self._applier = MergeApplier(self._store)

        # One change log and view per source table, shared by its streams
        self._logs: Dict[str, ChangeLog] = {}
        self._views: Dict[str, ChangeView] = {}
        self._lock = threading.RLock()

        self._registry = JobRegistry()
        self._scheduler = Scheduler(
            self._registry,
            self._pipeline_for,
            clock=clock,
            history_size=self._config.history_size,
        )

        self._restore_streams()
        logger.debug("StreamTaskConnection created: database=%s", self._config.database)

    def _restore_streams(self):
        """Re-attach change capture for streams persisted in the database."""
        for record in self._cursors.list_consumers():
            table = record["source_table"]
            if not self._store.has_table(table):
                logger.warning("Stream %s reads missing table %s", record["consumer_id"], table)
                continue
            self._view_for_table(table)
        if self._logs:
            logger.info("Restored change capture on %d table(s)", len(self._logs))

    def _check_open(self):
        if self._closed:
            raise StorageError("Connection is closed")

    # =========================================================================
    # Tables
    # =========================================================================

    def create_table(
        self,
        name: str,
        columns: Dict[str, str],
        primary_key: str,
        timestamp_column: str = None,
        if_not_exists: bool = False,
        replace: bool = False,
    ) -> TableSchema:
        """
        Create a keyed table.

        Args:
            name: Table name
            columns: Column name -> DuckDB type, in order
            primary_key: Key column
            timestamp_column: Column stamped with the UTC time of each write
                when the write does not set it
            if_not_exists: Keep an existing table instead of failing
            replace: Drop and recreate an existing table

        Example:
            conn.create_table(
                "students",
                {"student_id": "INTEGER", "name": "VARCHAR", "major": "VARCHAR",
                 "last_update": "TIMESTAMP"},
                primary_key="student_id",
                timestamp_column="last_update",
            )
        """
        self._check_open()
        schema = TableSchema.build(name, columns, primary_key, timestamp_column)
        if replace and (self._cursors.list_consumers(name) or self._registry.referencing(table=name)):
            raise ConfigurationError(f"Table {name} has streams or tasks; drop them first")
        return self._store.create_table(schema, if_not_exists=if_not_exists, replace=replace)

    def drop_table(self, name: str, if_exists: bool = False) -> bool:
        """Drop a table. Refused while streams read it or tasks write it."""
        self._check_open()
        streams = [r["consumer_id"] for r in self._cursors.list_consumers(name)]
        if streams:
            raise ConfigurationError(f"Table {name} is read by stream(s): {', '.join(streams)}")
        tasks = [t.name for t in self._registry.referencing(table=name)]
        if tasks:
            raise ConfigurationError(f"Table {name} is the target of task(s): {', '.join(tasks)}")
        return self._store.drop_table(name, if_exists=if_exists)

    def list_tables(self) -> List[str]:
        return self._store.list_tables()

    def describe_table(self, name: str) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self._store.get_schema(name).columns]

    def insert(self, table: str, rows: Union[Dict[str, Any], Iterable[Dict[str, Any]]]) -> int:
        """Insert one row or many rows in one transaction. Existing keys are replaced."""
        if isinstance(rows, dict):
            rows = [rows]
        return self.mutate(table, [Insert(row) for row in rows])

    def update(self, table: str, key: Any, values: Dict[str, Any]) -> int:
        """Update the row with ``key``. Returns 0 if there is no such row."""
        return self.mutate(table, Update(key, values))

    def delete(self, table: str, key: Any) -> int:
        """Delete the row with ``key``. Returns 0 if there is no such row."""
        return self.mutate(table, Delete(key))

    def mutate(self, table: str, ops: Union[Mutation, Iterable[Mutation]]) -> int:
        """Apply mutations atomically; tables with streams record them in their change log."""
        self._check_open()
        return self._store.mutate(table, ops)

    def table(self, name: str) -> pa.Table:
        """Current contents of a table as Arrow, ordered by key."""
        self._check_open()
        return self._store.read_all(name)

    def rows(self, name: str) -> List[Dict[str, Any]]:
        self._check_open()
        return self._store.read_rows(name)

    # =========================================================================
    # Streams
    # =========================================================================

    def _view_for_table(self, table: str) -> ChangeView:
        with self._lock:
            view = self._views.get(table)
            if view is None:
                log = ChangeLog(self._store, table)
                log.attach()
                view = ChangeView(log, self._cursors, max_batch_size=self._config.max_batch_size)
                self._logs[table] = log
                self._views[table] = view
            return view

    def _source_of(self, stream: str) -> str:
        record = self._cursors.describe(stream)
        if record is None:
            raise ConfigurationError(f"Unknown stream: {stream}")
        return record["source_table"]

    def create_stream(
        self,
        name: str,
        on_table: str,
        from_beginning: bool = False,
        replace: bool = False,
    ) -> Stream:
        """
        Create a stream over a table's changes.

        A new stream sees changes made after it is created. With
        ``from_beginning`` it also sees every change still held in the
        table's change log.

        Raises:
            ConfigurationError: If the table is unknown or the stream exists
        """
        self._check_open()
        with self._lock:
            self._store.get_schema(on_table)
            previous = self._cursors.describe(name) if replace else None
            if previous is not None:
                self._check_stream_unused(name)
            view = self._view_for_table(on_table)
            start = 0 if from_beginning else view.log.max_sequence()
            self._cursors.register(name, on_table, start_sequence=start, replace=replace)
            if previous is not None and previous["source_table"] != on_table:
                self._release_log(previous["source_table"])
        logger.info("Created stream %s on %s at sequence %d", name, on_table, start)
        return Stream(name, view)

    def stream(self, name: str) -> Stream:
        """Get a stream by name."""
        self._check_open()
        return Stream(name, self._view_for_table(self._source_of(name)))

    def stream_has_data(self, name: str) -> bool:
        """True if the stream has changes it has not consumed yet."""
        return self.stream(name).has_data()

    def list_streams(self) -> List[Dict[str, Any]]:
        """Streams with their source table, offset and pending state ("show streams")."""
        self._check_open()
        streams = []
        for record in self._cursors.list_consumers():
            view = self._view_for_table(record["source_table"])
            streams.append({
                "name": record["consumer_id"],
                "table_name": record["source_table"],
                "offset": record["last_sequence"],
                "has_data": view.has_data(record["consumer_id"]),
                "created_at": record["created_at"],
                "updated_at": record["updated_at"],
            })
        return streams

    def _check_stream_unused(self, name: str):
        tasks = [t.name for t in self._registry.referencing(stream=name)]
        if tasks:
            raise ConfigurationError(f"Stream {name} is used by task(s): {', '.join(tasks)}")

    def _release_log(self, table: str):
        """Drop a table's change log once no stream reads it."""
        if self._cursors.list_consumers(table):
            return
        log = self._logs.pop(table, None)
        self._views.pop(table, None)
        if log is not None:
            log.drop()
            logger.debug("Dropped change log of %s", table)

    def drop_stream(self, name: str, if_exists: bool = False) -> bool:
        """
        Drop a stream. The table's change log is dropped with its last stream.

        Raises:
            ConfigurationError: If the stream is unknown or a task uses it
        """
        self._check_open()
        with self._lock:
            record = self._cursors.describe(name)
            if record is None:
                if if_exists:
                    return False
                raise ConfigurationError(f"Unknown stream: {name}")
            self._check_stream_unused(name)

            self._cursors.unregister(name)
            self._release_log(record["source_table"])
        logger.info("Dropped stream %s", name)
        return True

    def compact_stream_logs(self) -> Dict[str, int]:
        """
        Purge change log entries every stream of the table has consumed.

        Returns:
            Mapping of table name to number of entries removed
        """
        self._check_open()
        purged = {}
        with self._lock:
            for table, log in self._logs.items():
                consumers = self._cursors.list_consumers(table)
                if not consumers:
                    continue
                low = min(c["last_sequence"] for c in consumers)
                purged[table] = log.purge_through(low)
        return purged

    # =========================================================================
    # Tasks
    # =========================================================================

    def _pipeline_for(self, task: TaskDefinition) -> MergePipeline:
        view = self._view_for_table(self._source_of(task.stream))
        return MergePipeline(
            task.stream,
            view,
            self._applier,
            task.target,
            max_batch_size=self._config.max_batch_size,
        )

    def create_task(
        self,
        name: str,
        schedule: Union[str, Schedule],
        stream: str,
        target: str,
        when_stream_has_data: bool = True,
        timeout: float = None,
        comment: str = None,
        replace: bool = False,
    ) -> Dict[str, Any]:
        """
        Create a task that merges ``stream`` into ``target`` on ``schedule``.

        The task is created suspended; call resume_task() to start it.

        Args:
            name: Task name
            schedule: "5 minute", "USING CRON 0 9 * * MON UTC", "AT 09:15 UTC"
                or a Schedule
            stream: Stream to consume
            target: Table to merge into; must be keyed like the stream's table
            when_stream_has_data: Skip runs when the stream is empty
            timeout: Seconds a run may take before it is rolled back
            comment: Free text shown by describe_task()
            replace: Replace an existing task of the same name

        Raises:
            ConfigurationError: On a bad schedule, unknown stream or
                incompatible target
        """
        self._check_open()
        if isinstance(schedule, str):
            schedule = parse_schedule(schedule)
        if timeout is None:
            timeout = self._config.default_task_timeout
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(f"Task timeout must be positive: {timeout}")

        source = self._store.get_schema(self._source_of(stream))
        self._applier.check_compatible(source, target)

        task = self._registry.create(
            TaskDefinition(
                name=name,
                stream=stream,
                target=target,
                schedule=schedule,
                when_stream_has_data=when_stream_has_data,
                timeout=timeout,
                comment=comment,
            ),
            replace=replace,
        )
        return task.to_dict()

    def resume_task(self, name: str) -> Dict[str, Any]:
        """Start scheduling a task."""
        return self._registry.resume(name, self._scheduler.now()).to_dict()

    def suspend_task(self, name: str) -> Dict[str, Any]:
        """Stop scheduling a task. A run in progress finishes."""
        return self._registry.suspend(name).to_dict()

    def drop_task(self, name: str, if_exists: bool = False) -> bool:
        if not self._registry.exists(name):
            if if_exists:
                return False
            raise ConfigurationError(f"Unknown task: {name}")
        self._registry.drop(name)
        return True

    def describe_task(self, name: str) -> Dict[str, Any]:
        return self._registry.describe(name)

    def show_tasks(self, state: Union[str, TaskState] = None) -> List[Dict[str, Any]]:
        if isinstance(state, str):
            state = TaskState(state.lower())
        return [t.to_dict() for t in self._registry.list(state)]

    def execute_task(self, name: str) -> Optional[TaskRun]:
        """Run a task once now, whatever its schedule or state."""
        self._check_open()
        return self._scheduler.execute(name)

    def run_pending(self, now: datetime = None) -> List[TaskRun]:
        """Run every started task that is due. Returns the runs performed."""
        self._check_open()
        return self._scheduler.tick(now)

    def task_history(
        self,
        task: str = None,
        since: datetime = None,
        state: Union[str, RunState] = None,
    ) -> List[Dict[str, Any]]:
        """Recorded task runs, oldest first."""
        if isinstance(state, str):
            state = RunState(state.lower())
        return [r.to_dict() for r in self._scheduler.history(task, since, state)]

    def start_scheduler(self, poll_interval: float = None):
        """Run due tasks in a background thread."""
        self._check_open()
        self._scheduler.start(poll_interval or self._config.poll_interval)

    def stop_scheduler(self):
        self._scheduler.stop()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ping(self) -> bool:
        """
        Test if the connection is alive.

        Returns:
            True if connection is healthy, False otherwise
        """
        if self._closed:
            return False
        return self._store.ping()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self):
        """Stop the scheduler and close the database."""
        if not self._closed:
            self._scheduler.stop()
            for log in self._logs.values():
                log.detach()
            self._store.close()
            self._closed = True
            logger.debug("StreamTaskConnection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def config(self) -> StreamTaskConfig:
        return self._config

    @property
    def store(self) -> TableStore:
        """Access the underlying table store."""
        return self._store

    @property
    def cursors(self) -> CursorStore:
        return self._cursors

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"<StreamTaskConnection database={self._config.database} status={status}>"
