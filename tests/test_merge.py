"""
Tests for the merge applier and pipeline
"""

import time

import pytest

from streamtask.cdc.cursors import CursorStore
from streamtask.cdc.log import ChangeLog
from streamtask.cdc.models import ChangeAction, ChangeEntry, row_id_for
from streamtask.cdc.view import ChangeView
from streamtask.exceptions import ConfigurationError, TransactionAbort
from streamtask.merge import MergeApplier, MergeResult
from streamtask.mutations import Delete, Insert, Update
from streamtask.pipeline import MergePipeline
from streamtask.schema import TableSchema
from streamtask.store import TableStore

COLUMNS = {"student_id": "INTEGER", "name": "VARCHAR", "major": "VARCHAR"}


def entry(sequence, action, is_update, key, **values):
    row = {"student_id": key, **values}
    return ChangeEntry(
        sequence=sequence,
        table="students",
        key=key,
        action=ChangeAction(action),
        is_update=is_update,
        row=row,
        row_id=row_id_for("students", key),
    )


class TestMergeRules:
    """Tests for the four merge rules."""

    def setup_method(self):
        self.store = TableStore()
        self.store.create_table(TableSchema.build("prod_students", COLUMNS, primary_key="student_id"))
        self.applier = MergeApplier(self.store)

    def teardown_method(self):
        self.store.close()

    def seed(self, key, name="Ada", major="CS"):
        self.store.mutate("prod_students", Insert({"student_id": key, "name": name, "major": major}))

    def test_delete_existing_row(self):
        self.seed(1)
        result = self.applier.apply("prod_students", [entry(1, "DELETE", False, 1, name="Ada")])

        assert result.deleted == 1
        assert not self.store.key_exists("prod_students", 1)

    def test_update_pair_overwrites_row(self):
        self.seed(1)
        result = self.applier.apply("prod_students", [
            entry(1, "DELETE", True, 1, name="Ada", major="CS"),
            entry(2, "INSERT", True, 1, name="Ada", major="Math"),
        ])

        assert result.updated == 1
        assert result.skipped == 1  # the DELETE half of the pair
        assert self.store.get_row("prod_students", 1)["major"] == "Math"

    def test_reinsert_existing_key_is_upsert(self):
        self.seed(1)
        result = self.applier.apply("prod_students", [entry(1, "INSERT", False, 1, name="Ada L.", major="CS")])

        assert result.updated == 1
        assert self.store.get_row("prod_students", 1)["name"] == "Ada L."

    def test_insert_new_row(self):
        result = self.applier.apply("prod_students", [entry(1, "INSERT", False, 1, name="Ada", major="CS")])

        assert result.inserted == 1
        assert self.store.get_row("prod_students", 1) == {"student_id": 1, "name": "Ada", "major": "CS"}

    def test_unmatched_combinations_are_noops(self):
        result = self.applier.apply("prod_students", [
            entry(1, "DELETE", False, 9),          # delete of missing key
            entry(2, "DELETE", True, 9),           # update half, missing key
            entry(3, "INSERT", True, 9, name="x"), # update of missing key
        ])

        assert result == MergeResult(skipped=3)
        assert self.store.row_count("prod_students") == 0

    def test_entries_applied_in_sequence_order(self):
        result = self.applier.apply("prod_students", [
            entry(2, "DELETE", False, 1, name="Ada"),
            entry(1, "INSERT", False, 1, name="Ada"),
        ])

        assert (result.inserted, result.deleted) == (1, 1)
        assert not self.store.key_exists("prod_students", 1)

    def test_delete_then_reinsert_same_key(self):
        self.seed(1)
        self.applier.apply("prod_students", [
            entry(1, "DELETE", False, 1, name="Ada"),
            entry(2, "INSERT", False, 1, name="Ada again", major="Art"),
        ])

        assert self.store.get_row("prod_students", 1)["name"] == "Ada again"

    def test_apply_twice_is_idempotent(self):
        self.seed(3, name="Carl")
        batch = [
            entry(1, "INSERT", False, 1, name="Ada", major="CS"),
            entry(2, "INSERT", False, 2, name="Grace", major="Math"),
            entry(3, "DELETE", True, 1, name="Ada", major="CS"),
            entry(4, "INSERT", True, 1, name="Ada", major="Physics"),
            entry(5, "DELETE", False, 3, name="Carl"),
        ]

        self.applier.apply("prod_students", batch)
        once = self.store.read_rows("prod_students")
        self.applier.apply("prod_students", batch)

        assert self.store.read_rows("prod_students") == once
        assert [r["student_id"] for r in once] == [1, 2]
        assert once[0]["major"] == "Physics"

    def test_failure_rolls_back_whole_batch(self):
        with pytest.raises(TransactionAbort):
            self.applier.apply("prod_students", [
                entry(1, "INSERT", False, 1, name="Ada"),
                entry(2, "INSERT", False, None, name="no key"),
            ])

        assert self.store.row_count("prod_students") == 0

    def test_deadline_rolls_back(self):
        with pytest.raises(TransactionAbort):
            self.applier.apply(
                "prod_students",
                [entry(1, "INSERT", False, 1, name="Ada")],
                deadline=time.monotonic() - 1,
            )

        assert self.store.row_count("prod_students") == 0

    def test_snapshot_projected_onto_target_columns(self):
        self.store.create_table(TableSchema.build(
            "names", {"student_id": "INTEGER", "name": "VARCHAR"}, primary_key="student_id",
        ))
        self.applier.apply("names", [entry(1, "INSERT", False, 1, name="Ada", major="CS")])

        assert self.store.get_row("names", 1) == {"student_id": 1, "name": "Ada"}

    def test_check_compatible(self):
        source = TableSchema.build("students", COLUMNS, primary_key="student_id")
        self.store.create_table(TableSchema.build(
            "by_name", {"name": "VARCHAR", "student_id": "INTEGER"}, primary_key="name",
        ))

        self.applier.check_compatible(source, "prod_students")
        with pytest.raises(ConfigurationError):
            self.applier.check_compatible(source, "by_name")
        with pytest.raises(ConfigurationError):
            self.applier.check_compatible(source, "missing")


class TestMergePipeline:
    """Tests for consume-then-apply as one unit."""

    def setup_method(self):
        self.store = TableStore()
        self.store.create_table(TableSchema.build("students", COLUMNS, primary_key="student_id"))
        self.store.create_table(TableSchema.build("prod_students", COLUMNS, primary_key="student_id"))
        log = ChangeLog(self.store, "students")
        log.attach()
        self.cursors = CursorStore(self.store)
        self.view = ChangeView(log, self.cursors)
        self.pipeline = MergePipeline("s", self.view, MergeApplier(self.store), "prod_students")

    def teardown_method(self):
        self.store.close()

    def test_run_converges(self):
        self.store.mutate("students", [
            Insert({"student_id": 1, "name": "Ada", "major": "CS"}),
            Insert({"student_id": 2, "name": "Grace", "major": "Math"}),
        ])
        self.store.mutate("students", Update(1, {"major": "Physics"}))
        self.store.mutate("students", Delete(2))

        result = self.pipeline.run()

        assert result.entries == 5
        assert self.store.read_rows("prod_students") == self.store.read_rows("students")
        assert not self.pipeline.has_data()

    def test_empty_run(self):
        assert self.pipeline.run() == MergeResult()
        assert self.cursors.get("s") == 0

    def test_failed_apply_keeps_cursor(self):
        self.store.mutate("students", Insert({"student_id": 1, "name": "Ada"}))

        with pytest.raises(TransactionAbort):
            self.pipeline.run(deadline=time.monotonic() - 1)

        assert self.cursors.get("s") == 0
        assert self.pipeline.has_data()

        self.pipeline.run()
        assert self.store.key_exists("prod_students", 1)
        assert not self.pipeline.has_data()
