#!/usr/bin/env python
"""
StreamTask Async Example

Serves scheduled tasks inside an event loop while the application keeps
writing to the source table.
"""

import anyio

from streamtask import connect_async

COLUMNS = {"order_id": "INTEGER", "status": "VARCHAR", "amount": "DOUBLE"}


async def write_orders(conn):
    """Simulate application writes."""
    for order_id in range(1, 6):
        await conn.insert("orders", {"order_id": order_id, "status": "new", "amount": 10.0 * order_id})
        await anyio.sleep(0.5)
    await conn.update("orders", 1, {"status": "shipped"})
    await conn.delete("orders", 2)


async def main():
    conn = await connect_async()

    async with conn:
        await conn.create_table("orders", COLUMNS, primary_key="order_id")
        await conn.create_table("orders_replica", COLUMNS, primary_key="order_id")
        await conn.create_stream("orders_stream", "orders")
        await conn.create_task("replicate_orders", "1 second", "orders_stream", "orders_replica")
        await conn.resume_task("replicate_orders")

        async with anyio.create_task_group() as tg:
            tg.start_soon(conn.serve, 0.2)
            await write_orders(conn)
            await anyio.sleep(2)
            conn.stop()

        print(await conn.table("orders_replica"))
        for run in await conn.task_history("replicate_orders", state="succeeded"):
            print(f"  {run['started_at']:%H:%M:%S} {run['result']}")


if __name__ == "__main__":
    anyio.run(main)
