#!/usr/bin/env python
"""
StreamTask Students Example

Captures changes to a students table and merges them into prod_students
with a task, the way a warehouse "stream + task" pipeline does.
"""

import logging

import streamtask

COLUMNS = {
    "student_id": "INTEGER",
    "first_name": "VARCHAR",
    "last_name": "VARCHAR",
    "major": "VARCHAR",
    "last_update": "TIMESTAMP",
}


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    with streamtask.connect() as conn:
        conn.create_table("students", COLUMNS, primary_key="student_id",
                          timestamp_column="last_update")
        conn.create_table("prod_students", COLUMNS, primary_key="student_id")

        conn.create_stream("students_stream", on_table="students")
        conn.create_task(
            "students_task",
            "5 minute",
            stream="students_stream",
            target="prod_students",
            comment="Keep prod_students in sync with students",
        )
        conn.resume_task("students_task")
        print(conn.describe_task("students_task"))

        # New students
        conn.insert("students", [
            {"student_id": 1, "first_name": "Ada", "last_name": "Lovelace", "major": "Math"},
            {"student_id": 2, "first_name": "Alan", "last_name": "Turing", "major": "CS"},
            {"student_id": 3, "first_name": "Grace", "last_name": "Hopper", "major": "CS"},
        ])
        print("\nPending changes:")
        print(conn.stream("students_stream").to_arrow())

        conn.execute_task("students_task")
        print("\nAfter first run:")
        print(conn.table("prod_students"))

        # An update shows up as a DELETE + INSERT pair
        conn.update("students", 1, {"major": "Physics"})
        print("\nUpdate as change rows:")
        print(conn.stream("students_stream").to_arrow())
        conn.execute_task("students_task")

        # A re-insert of an existing key is merged as an upsert
        conn.insert("students", {"student_id": 3, "first_name": "Grace",
                                 "last_name": "Hopper", "major": "Navy"})
        conn.execute_task("students_task")

        conn.delete("students", 2)
        conn.execute_task("students_task")

        print("\nFinal prod_students:")
        print(conn.table("prod_students"))

        print("\nTask history:")
        for run in conn.task_history("students_task"):
            print(f"  {run['started_at']:%H:%M:%S} {run['state']:<10} {run['result']}")

        conn.suspend_task("students_task")


if __name__ == "__main__":
    main()
