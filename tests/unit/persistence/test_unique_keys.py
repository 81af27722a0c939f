"""Unique-key counter tests: durability, monotonicity, and failure reporting."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import capture_logs

from sqlpatch.persistence import (
    DatabaseBusyError,
    RowNotFoundError,
    SQLDb,
    SQLDbError,
    StatementError,
    UniqueKeyError,
    UniqueKeyGenerator,
    next_unique_key,
    open_and_patch_db,
)

from . import db_path

if TYPE_CHECKING:
    from pathlib import Path


def test_keys_start_at_one_and_survive_reopen(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db:
        assert next_unique_key(db) == 1
        assert next_unique_key(db) == 2

    with open_and_patch_db(db_path(tmp_path)) as reopened:
        assert next_unique_key(reopened) == 3


def test_increment_is_committed_before_key_is_returned(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db:
        key = next_unique_key(db)

        assert not db.in_transaction
        with SQLDb.open(db_path(tmp_path)) as observer:
            row = observer.single_query("SELECT next FROM gkey")
            assert row is not None and row["next"] == key + 1


def test_missing_gkey_row_raises_row_not_found(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db:
        db.exec("DELETE FROM gkey")

        with pytest.raises(RowNotFoundError, match="no gkey row"):
            next_unique_key(db)
        assert not db.in_transaction


def test_unpatched_database_raises_statement_error(tmp_path: Path) -> None:
    with SQLDb.open(db_path(tmp_path)) as db:
        with pytest.raises(StatementError, match="no such table: gkey"):
            next_unique_key(db)
        assert not db.in_transaction


def test_next_unique_key_inside_open_transaction_fails_without_consuming(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db:
        db.begin_trans()
        with pytest.raises(StatementError, match="begin transaction failed"):
            next_unique_key(db)
        db.rollback_trans()

        assert next_unique_key(db) == 1


def test_generator_yields_consecutive_keys(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db:
        generator = UniqueKeyGenerator(db)
        first = generator.next()
        rest = [next(generator) for _ in range(3)]

        assert [first, *rest] == [1, 2, 3, 4]


def test_issued_keys_are_logged(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)) as db, capture_logs() as logs:
        next_unique_key(db)

    issued = [entry for entry in logs if entry["event"] == "unique_key_issued"]
    assert issued == [{"event": "unique_key_issued", "log_level": "debug", "key": 1}]


def test_separate_connections_never_issue_the_same_key(tmp_path: Path) -> None:
    with open_and_patch_db(db_path(tmp_path)):
        pass

    issued: list[int] = []
    failures: list[BaseException] = []
    lock = threading.Lock()

    def _worker(db: SQLDb) -> None:
        for _ in range(10):
            try:
                key = next_unique_key(db)
            except SQLDbError as exc:
                with lock:
                    failures.append(exc)
                continue
            with lock:
                issued.append(key)

    handles = [SQLDb.open(db_path(tmp_path)) for _ in range(4)]
    threads = [threading.Thread(target=_worker, args=(handle,)) for handle in handles]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
    finally:
        for handle in handles:
            handle.close()

    # Contended increments may fail, but no key is ever handed out twice.
    assert len(issued) + len(failures) == 40
    assert len(set(issued)) == len(issued)
    assert all(isinstance(exc, (DatabaseBusyError, UniqueKeyError)) for exc in failures)
    with SQLDb.open(db_path(tmp_path)) as db:
        row = db.single_query("SELECT next FROM gkey")
        assert row is not None and row["next"] == len(issued) + 1


@given(count=st.integers(min_value=1, max_value=30))
@settings(max_examples=20, derandomize=True, deadline=None)
def test_property_keys_strictly_increase_by_one(count: int) -> None:
    with open_and_patch_db(":memory:") as db:
        keys = [next_unique_key(db) for _ in range(count)]

        assert keys == list(range(1, count + 1))
        row = db.single_query("SELECT next FROM gkey")
        assert row is not None and row["next"] == count + 1
