"""
StreamTask Async Connection - async/await facade over StreamTaskConnection

DuckDB calls are blocking, so every operation runs in a worker thread via
anyio; the engine itself stays synchronous and thread-safe.
"""

from __future__ import annotations
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import anyio
import pyarrow as pa

from streamtask.config import StreamTaskConfig
from streamtask.connection import StreamTaskConnection
from streamtask.connection_base import ConnectionMixin
from streamtask.tasks.schedule import Schedule
from streamtask.tasks.scheduler import TaskRun

logger = logging.getLogger(__name__)


class AsyncStreamTaskConnection(ConnectionMixin):
    """
    Async version of StreamTaskConnection.

    Provides async/await support for:
    - Table mutations and reads
    - Stream and task administration
    - Serving the scheduler inside an event loop (``serve()``)
    """

    def __init__(
        self,
        connection_string: str = None,
        *,
        config: StreamTaskConfig = None,
        clock: Callable[[], datetime] = None,
        **kwargs,
    ):
        self._sync = StreamTaskConnection(connection_string, config=config, clock=clock, **kwargs)
        self._stop_event: Optional[anyio.Event] = None
        logger.debug("AsyncStreamTaskConnection created: database=%s", self._sync.config.database)

    async def _run(self, func: Callable, *args, **kwargs) -> Any:
        return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))

    # =========================================================================
    # Tables
    # =========================================================================

    async def create_table(self, name: str, columns: Dict[str, str], primary_key: str, **kwargs):
        return await self._run(self._sync.create_table, name, columns, primary_key, **kwargs)

    async def drop_table(self, name: str, if_exists: bool = False) -> bool:
        return await self._run(self._sync.drop_table, name, if_exists=if_exists)

    async def insert(self, table: str, rows) -> int:
        return await self._run(self._sync.insert, table, rows)

    async def update(self, table: str, key: Any, values: Dict[str, Any]) -> int:
        return await self._run(self._sync.update, table, key, values)

    async def delete(self, table: str, key: Any) -> int:
        return await self._run(self._sync.delete, table, key)

    async def mutate(self, table: str, ops) -> int:
        return await self._run(self._sync.mutate, table, ops)

    async def table(self, name: str) -> pa.Table:
        return await self._run(self._sync.table, name)

    async def rows(self, name: str) -> List[Dict[str, Any]]:
        return await self._run(self._sync.rows, name)

    # =========================================================================
    # Streams
    # =========================================================================

    async def create_stream(self, name: str, on_table: str, **kwargs):
        return await self._run(self._sync.create_stream, name, on_table, **kwargs)

    async def drop_stream(self, name: str, if_exists: bool = False) -> bool:
        return await self._run(self._sync.drop_stream, name, if_exists=if_exists)

    async def stream_has_data(self, name: str) -> bool:
        return await self._run(self._sync.stream_has_data, name)

    async def list_streams(self) -> List[Dict[str, Any]]:
        return await self._run(self._sync.list_streams)

    async def peek_stream(self, name: str) -> pa.Table:
        """Unconsumed changes of a stream as Arrow, without consuming them."""
        stream = await self._run(self._sync.stream, name)
        return await self._run(stream.to_arrow)

    # =========================================================================
    # Tasks
    # =========================================================================

    async def create_task(
        self,
        name: str,
        schedule: Union[str, Schedule],
        stream: str,
        target: str,
        **kwargs,
    ) -> Dict[str, Any]:
        return await self._run(self._sync.create_task, name, schedule, stream, target, **kwargs)

    async def resume_task(self, name: str) -> Dict[str, Any]:
        return await self._run(self._sync.resume_task, name)

    async def suspend_task(self, name: str) -> Dict[str, Any]:
        return await self._run(self._sync.suspend_task, name)

    async def drop_task(self, name: str, if_exists: bool = False) -> bool:
        return await self._run(self._sync.drop_task, name, if_exists=if_exists)

    async def describe_task(self, name: str) -> Dict[str, Any]:
        return await self._run(self._sync.describe_task, name)

    async def show_tasks(self, state=None) -> List[Dict[str, Any]]:
        return await self._run(self._sync.show_tasks, state)

    async def execute_task(self, name: str) -> Optional[TaskRun]:
        return await self._run(self._sync.execute_task, name)

    async def run_pending(self, now: datetime = None) -> List[TaskRun]:
        return await self._run(self._sync.run_pending, now)

    async def task_history(self, task: str = None, **kwargs) -> List[Dict[str, Any]]:
        return await self._run(self._sync.task_history, task, **kwargs)

    # =========================================================================
    # Serving
    # =========================================================================

    async def serve(self, poll_interval: float = None):
        """
        Run due tasks every ``poll_interval`` seconds until stop() is called.

        Usage:
            async with anyio.create_task_group() as tg:
                tg.start_soon(conn.serve)
                ...
                conn.stop()
        """
        poll_interval = poll_interval or self._sync.config.poll_interval
        self._stop_event = anyio.Event()
        logger.info("Serving tasks (poll interval %.2fs)", poll_interval)
        try:
            while not self._stop_event.is_set():
                runs = await self.run_pending()
                if runs:
                    logger.debug("Tick ran %d task(s)", len(runs))
                with anyio.move_on_after(poll_interval):
                    await self._stop_event.wait()
        finally:
            self._stop_event = None
            logger.info("Stopped serving tasks")

    def stop(self):
        """Ask serve() to return after its current tick."""
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def serving(self) -> bool:
        return self._stop_event is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ping(self) -> bool:
        return await self._run(self._sync.ping)

    async def close(self):
        """Close the connection and release resources."""
        self.stop()
        if not self._sync.is_closed:
            await self._run(self._sync.close)
            logger.debug("AsyncStreamTaskConnection closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    @property
    def is_closed(self) -> bool:
        return self._sync.is_closed

    @property
    def sync(self) -> StreamTaskConnection:
        """Access the wrapped synchronous connection."""
        return self._sync

    @property
    def config(self) -> StreamTaskConfig:
        return self._sync.config

    def __repr__(self) -> str:
        status = "closed" if self.is_closed else "open"
        return f"<AsyncStreamTaskConnection database={self.config.database} status={status}>"
