"""
StreamTask - change streams and scheduled merges on DuckDB

Capture every change to a table, consume it exactly once per stream, and
merge it into a target table on a schedule.

Usage:
    import streamtask

    conn = streamtask.connect()
    conn.create_table("students", {"student_id": "INTEGER", "name": "VARCHAR"},
                      primary_key="student_id")
    conn.create_table("prod_students", {"student_id": "INTEGER", "name": "VARCHAR"},
                      primary_key="student_id")
    conn.create_stream("students_stream", on_table="students")
    conn.create_task("students_task", "5 minute", "students_stream", "prod_students")
    conn.resume_task("students_task")

    conn.insert("students", {"student_id": 1, "name": "Ada"})
    conn.execute_task("students_task")
    print(conn.table("prod_students"))
"""

import functools
from datetime import datetime
from typing import Callable

import anyio

from streamtask.config import StreamTaskConfig
from streamtask.connection import StreamTaskConnection
from streamtask.async_connection import AsyncStreamTaskConnection
from streamtask.exceptions import (
    StreamTaskError,
    StorageError,
    ConcurrentCursorConflict,
    TransactionAbort,
    ConfigurationError,
    RECOVERABLE_ERRORS,
)
from streamtask.mutations import Insert, Update, Delete
from streamtask.schema import ColumnInfo, TableSchema
from streamtask.store import TableStore
from streamtask.cdc import (
    ChangeAction,
    ChangeBatch,
    ChangeEntry,
    ChangeLog,
    CursorStore,
    ChangeView,
    Stream,
)
from streamtask.merge import MergeApplier, MergeResult
from streamtask.pipeline import MergePipeline
from streamtask.tasks import (
    Schedule,
    FixedInterval,
    FixedTime,
    CronSchedule,
    parse_schedule,
    JobRegistry,
    TaskDefinition,
    TaskState,
    RunState,
    Scheduler,
    TaskRun,
)

__version__ = "0.1.0"
__all__ = [
    "connect",
    "connect_async",
    "StreamTaskConnection",
    "AsyncStreamTaskConnection",
    "StreamTaskConfig",
    # Exceptions
    "StreamTaskError",
    "StorageError",
    "ConcurrentCursorConflict",
    "TransactionAbort",
    "ConfigurationError",
    "RECOVERABLE_ERRORS",
    # Tables
    "Insert",
    "Update",
    "Delete",
    "ColumnInfo",
    "TableSchema",
    "TableStore",
    # Change capture
    "ChangeAction",
    "ChangeBatch",
    "ChangeEntry",
    "ChangeLog",
    "CursorStore",
    "ChangeView",
    "Stream",
    # Merging
    "MergeApplier",
    "MergeResult",
    "MergePipeline",
    # Tasks
    "Schedule",
    "FixedInterval",
    "FixedTime",
    "CronSchedule",
    "parse_schedule",
    "JobRegistry",
    "TaskDefinition",
    "TaskState",
    "RunState",
    "Scheduler",
    "TaskRun",
]


def connect(
    connection_string: str = None,
    *,
    config: StreamTaskConfig = None,
    clock: Callable[[], datetime] = None,
    **kwargs
) -> StreamTaskConnection:
    """
    Open a StreamTask database.

    Args:
        connection_string: ":memory:" (default), "duckdb:///path/to/file.db"
            or a plain file path; query parameters override config options
        config: Base configuration (defaults to StreamTaskConfig())
        clock: Scheduler clock returning an aware UTC datetime
        **kwargs: Config options, e.g. poll_interval=0.5

    Returns:
        StreamTaskConnection instance

    Examples:
        conn = streamtask.connect()
        conn = streamtask.connect("duckdb:///var/lib/app/cdc.db?max_batch_size=500")
        conn = streamtask.connect(config=streamtask.StreamTaskConfig.from_env())
    """
    return StreamTaskConnection(connection_string, config=config, clock=clock, **kwargs)


async def connect_async(
    connection_string: str = None,
    *,
    config: StreamTaskConfig = None,
    clock: Callable[[], datetime] = None,
    **kwargs
) -> AsyncStreamTaskConnection:
    """
    Open a StreamTask database for use from async code.
    """
    return await anyio.to_thread.run_sync(
        functools.partial(
            AsyncStreamTaskConnection, connection_string, config=config, clock=clock, **kwargs
        )
    )

