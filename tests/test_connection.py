"""
Tests for the StreamTask connection: streams, tasks and end-to-end merges
"""

import random
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pyarrow as pa

import streamtask
from streamtask.exceptions import ConfigurationError, StorageError
from streamtask.mutations import Delete, Insert, Update

STUDENT_COLUMNS = {
    "student_id": "INTEGER",
    "name": "VARCHAR",
    "major": "VARCHAR",
    "last_update": "TIMESTAMP",
}

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


def setup_students(conn):
    conn.create_table("students", STUDENT_COLUMNS, primary_key="student_id",
                      timestamp_column="last_update")
    conn.create_table("prod_students", STUDENT_COLUMNS, primary_key="student_id")
    conn.create_stream("students_stream", on_table="students")


def data_rows(conn, table):
    return [{k: v for k, v in r.items() if k != "last_update"} for r in conn.rows(table)]


class TestWalkthrough:
    """The students -> prod_students scenario, step by step."""

    def setup_method(self):
        self.clock = FakeClock()
        self.conn = streamtask.connect(clock=self.clock)
        setup_students(self.conn)
        self.conn.create_task(
            "students_task", "5 minute", "students_stream", "prod_students",
            comment="merge student changes",
        )

    def teardown_method(self):
        self.conn.close()

    def tick(self, minutes=5):
        self.clock.now += timedelta(minutes=minutes)
        return self.conn.run_pending()

    def test_scenario(self):
        self.conn.resume_task("students_task")

        # Insert rows 1, 2, 3
        self.conn.insert("students", [
            {"student_id": 1, "name": "Ada", "major": "CS"},
            {"student_id": 2, "name": "Grace", "major": "Math"},
            {"student_id": 3, "name": "Alan", "major": "Physics"},
        ])
        assert self.conn.stream_has_data("students_stream")
        (run,) = self.tick()
        assert run.state is streamtask.RunState.SUCCEEDED
        assert run.result.inserted == 3
        assert self.conn.rows("prod_students") == self.conn.rows("students")
        assert not self.conn.stream_has_data("students_stream")

        # Update row 1's major
        self.conn.update("students", 1, {"major": "Biology"})
        pending = self.conn.stream("students_stream").peek()
        assert [(e.action.value, e.is_update) for e in pending] == [
            ("DELETE", True), ("INSERT", True),
        ]
        assert pending.entries[0].row["major"] == "CS"
        assert pending.entries[1].row["major"] == "Biology"
        self.tick()
        row = self.conn.store.get_row("prod_students", 1)
        assert row["major"] == "Biology"

        # Re-insert row 3 with a changed major, no explicit update
        self.conn.insert("students", {"student_id": 3, "name": "Alan", "major": "Chemistry"})
        (entry,) = self.conn.stream("students_stream").peek()
        assert (entry.action.value, entry.is_update) == ("INSERT", False)
        (run,) = self.tick()
        assert run.result.updated == 1
        assert self.conn.store.get_row("prod_students", 3)["major"] == "Chemistry"
        assert self.conn.store.row_count("prod_students") == 3

        assert self.conn.rows("prod_students") == self.conn.rows("students")

    def test_skipped_when_stream_empty(self):
        self.conn.resume_task("students_task")

        (run,) = self.tick()
        assert run.state is streamtask.RunState.SKIPPED
        history = self.conn.task_history("students_task", state="skipped")
        assert len(history) == 1

    def test_created_task_does_not_run(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})

        assert self.tick(minutes=60) == []
        assert self.conn.store.row_count("prod_students") == 0

    def test_suspend_task(self):
        self.conn.resume_task("students_task")
        self.conn.suspend_task("students_task")
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})

        assert self.tick(minutes=60) == []
        assert self.conn.describe_task("students_task")["state"] == "suspended"

    def test_execute_task(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})

        run = self.conn.execute_task("students_task")
        assert run.state is streamtask.RunState.SUCCEEDED
        assert self.conn.store.key_exists("prod_students", 1)

    def test_show_and_describe_tasks(self):
        self.conn.resume_task("students_task")

        (task,) = self.conn.show_tasks()
        assert task["name"] == "students_task"
        assert task["state"] == "started"
        assert task["schedule"] == "5 minute"
        assert task["comment"] == "merge student changes"
        assert task["next_run"] == START + timedelta(minutes=5)
        assert self.conn.show_tasks(state="suspended") == []

    def test_naive_times(self):
        self.conn.resume_task("students_task")
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})

        (run,) = self.conn.run_pending(datetime(2100, 1, 1))
        assert run.state is streamtask.RunState.SUCCEEDED
        assert len(self.conn.task_history("students_task", since=datetime(2024, 1, 1))) == 1
        assert self.conn.task_history(since=datetime(2100, 1, 1)) == []

    def test_drop_task(self):
        assert self.conn.drop_task("students_task")
        assert not self.conn.drop_task("students_task", if_exists=True)
        with pytest.raises(ConfigurationError):
            self.conn.describe_task("students_task")


class TestStreams:
    """Tests for stream administration through the connection."""

    def setup_method(self):
        self.conn = streamtask.connect()
        setup_students(self.conn)

    def teardown_method(self):
        self.conn.close()

    def test_stream_sees_only_later_changes(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})
        self.conn.create_stream("late_stream", on_table="students")
        self.conn.insert("students", {"student_id": 2, "name": "Grace"})

        assert [e.key for e in self.conn.stream("late_stream").peek()] == [2]
        assert [e.key for e in self.conn.stream("students_stream").peek()] == [1, 2]

    def test_stream_from_beginning(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})
        self.conn.create_stream("replay", on_table="students", from_beginning=True)

        assert len(self.conn.stream("replay").peek()) == 1

    def test_stream_arrow_preview(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})
        table = self.conn.stream("students_stream").to_arrow()

        assert isinstance(table, pa.Table)
        assert "METADATA$ROW_ID" in table.column_names

    def test_unknown_stream(self):
        with pytest.raises(ConfigurationError):
            self.conn.stream("missing")
        with pytest.raises(ConfigurationError):
            self.conn.create_stream("s", on_table="missing")

    def test_duplicate_stream(self):
        with pytest.raises(ConfigurationError):
            self.conn.create_stream("students_stream", on_table="students")

    def test_list_streams(self):
        self.conn.insert("students", {"student_id": 1, "name": "Ada"})

        (info,) = self.conn.list_streams()
        assert info["name"] == "students_stream"
        assert info["table_name"] == "students"
        assert info["has_data"] is True

    def test_drop_stream(self):
        assert self.conn.drop_stream("students_stream")
        assert not self.conn.drop_stream("students_stream", if_exists=True)
        assert self.conn.list_streams() == []
        # Capture stops with the last stream
        assert not self.conn.store.has_table("__changes_students")

    def test_replace_stream_onto_another_table(self):
        self.conn.create_table("alumni", STUDENT_COLUMNS, primary_key="student_id")
        self.conn.create_stream("students_stream", on_table="alumni", replace=True)

        # The old table has no stream left, so its capture is gone
        assert not self.conn.store.has_table("__changes_students")
        self.conn.insert("students", [{"student_id": i} for i in range(1, 51)])
        assert self.conn.compact_stream_logs() == {"alumni": 0}
        assert not self.conn.store.has_table("__changes_students")

        self.conn.insert("alumni", {"student_id": 1, "name": "Ada"})
        (info,) = self.conn.list_streams()
        assert info["table_name"] == "alumni"
        assert [e.key for e in self.conn.stream("students_stream").peek()] == [1]

    def test_replace_stream_keeps_shared_log(self):
        self.conn.create_stream("second", on_table="students")
        self.conn.create_table("alumni", STUDENT_COLUMNS, primary_key="student_id")
        self.conn.create_stream("students_stream", on_table="alumni", replace=True)

        self.conn.insert("students", {"student_id": 1, "name": "Ada"})
        assert [e.key for e in self.conn.stream("second").peek()] == [1]

    def test_stream_in_use_by_task(self):
        self.conn.create_task("t", "1 hour", "students_stream", "prod_students")

        with pytest.raises(ConfigurationError):
            self.conn.drop_stream("students_stream")
        with pytest.raises(ConfigurationError):
            self.conn.drop_table("prod_students")
        with pytest.raises(ConfigurationError):
            self.conn.drop_table("students")

    def test_task_validation(self):
        self.conn.create_table("by_name", {"name": "VARCHAR", "student_id": "INTEGER"},
                               primary_key="name")

        with pytest.raises(ConfigurationError):
            self.conn.create_task("t", "whenever", "students_stream", "prod_students")
        with pytest.raises(ConfigurationError):
            self.conn.create_task("t", "1 hour", "missing_stream", "prod_students")
        with pytest.raises(ConfigurationError):
            self.conn.create_task("t", "1 hour", "students_stream", "missing_table")
        with pytest.raises(ConfigurationError):
            self.conn.create_task("t", "1 hour", "students_stream", "by_name")

    def test_compact_stream_logs(self):
        self.conn.create_stream("second", on_table="students")
        self.conn.insert("students", [{"student_id": i} for i in range(1, 5)])
        self.conn.stream("students_stream").consume()
        self.conn.stream("second").consume(limit=2)

        assert self.conn.compact_stream_logs() == {"students": 2}
        # The slower stream still sees what it has not consumed
        assert [e.key for e in self.conn.stream("second").peek()] == [3, 4]

    def test_closed_connection(self):
        self.conn.close()

        assert not self.conn.ping()
        with pytest.raises(StorageError):
            self.conn.insert("students", {"student_id": 1})


class TestConvergence:
    """Random mutation sequences always converge to the source state."""

    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_random_mutations_converge(self, seed):
        rng = random.Random(seed)
        with streamtask.connect() as conn:
            setup_students(conn)
            conn.create_task("t", "1 minute", "students_stream", "prod_students")

            for _ in range(rng.randint(20, 60)):
                key = rng.randint(1, 8)
                op = rng.choice(["insert", "update", "delete"])
                if op == "insert":
                    conn.insert("students", {"student_id": key, "name": f"n{rng.random():.3f}",
                                             "major": rng.choice(["CS", "Math", None])})
                elif op == "update":
                    conn.update("students", key, {"major": rng.choice(["Art", "Law"])})
                else:
                    conn.delete("students", key)
                if rng.random() < 0.2:
                    conn.execute_task("t")

            conn.execute_task("t")
            assert data_rows(conn, "prod_students") == data_rows(conn, "students")

    def test_reapplying_a_batch_is_idempotent(self):
        with streamtask.connect() as conn:
            setup_students(conn)
            conn.insert("students", [{"student_id": 1, "name": "Ada"}, {"student_id": 2}])
            conn.update("students", 1, {"major": "CS"})
            conn.delete("students", 2)

            batch = conn.stream("students_stream").peek()
            applier = streamtask.MergeApplier(conn.store)
            applier.apply("prod_students", batch)
            once = conn.rows("prod_students")
            applier.apply("prod_students", batch)

            assert conn.rows("prod_students") == once

    def test_concurrent_advances_keep_maximum(self):
        with streamtask.connect() as conn:
            sequences = list(range(1, 41))
            random.Random(7).shuffle(sequences)

            def advance(chunk):
                for seq in chunk:
                    conn.cursors.advance("c", seq)

            threads = [threading.Thread(target=advance, args=(sequences[i::4],)) for i in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert conn.cursors.get("c") == 40


class TestPersistence:
    """Streams and cursors survive reopening a database file."""

    def test_reopen(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = str(Path(tmp) / "cdc.db")

            with streamtask.connect(f"duckdb://{path}") as conn:
                setup_students(conn)
                conn.insert("students", {"student_id": 1, "name": "Ada"})
                conn.stream("students_stream").consume()
                conn.insert("students", {"student_id": 2, "name": "Grace"})

            with streamtask.connect(path) as conn:
                stream = conn.stream("students_stream")
                assert [e.key for e in stream.peek()] == [2]

                # Capture is re-attached
                conn.mutate("students", [Update(2, {"major": "Math"}), Delete(1),
                                         Insert({"student_id": 3, "name": "Alan"})])
                assert len(stream.peek()) == 5
