"""
sqlpatch — durable unique-key generator.

File: src/sqlpatch/persistence/unique_keys.py
Last updated: 2026-10-19

Purpose
- Issue strictly increasing integer keys that survive close/reopen, backed by
  the single-row ``gkey`` table that internal patch -1 creates.

What should be included in this file
- next_unique_key: read, guarded increment, commit, return.
- UniqueKeyGenerator for callers that mint many keys from one handle.

Functional requirements
- A key is returned only after its increment has committed.
- A concurrent writer that moved the counter makes the call fail, not repeat a key.

Non-functional requirements
- No retries; busy errors surface as ``DatabaseBusyError``.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import structlog

from sqlpatch.constants import GKEY_TABLE
from sqlpatch.persistence.sql_db import RowNotFoundError, SQLDb, SQLDbError


class UniqueKeyError(SQLDbError):
    """Raised when the guarded ``gkey`` increment does not take effect."""


def next_unique_key(db: SQLDb, *, logger: Any | None = None) -> int:
    """Return the next unique key, committing the increment before returning.

    The read and the guarded increment share one transaction; any failure
    rolls it back, so a key is never handed out without its increment.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    with db.transaction():
        row = db.single_query(f"SELECT next FROM {GKEY_TABLE}")
        if row is None:
            raise RowNotFoundError(
                f"no {GKEY_TABLE} row in {db.path}; the database is unpatched or corrupted"
            )
        key = int(row["next"])
        result = db.exec(
            f"UPDATE {GKEY_TABLE} SET next = next + 1 WHERE next = ?",
            (key,),
        )
        if result.rowcount != 1:
            raise UniqueKeyError(
                f"{GKEY_TABLE} changed while issuing key {key} in {db.path} "
                f"(updated {result.rowcount} rows)"
            )
    log.debug("unique_key_issued", key=key)
    return key


class UniqueKeyGenerator:
    """Iterator over :func:`next_unique_key` for callers minting many keys."""

    def __init__(self, db: SQLDb, *, logger: Any | None = None) -> None:
        self._db = db
        self._logger = logger

    def next(self) -> int:
        return next_unique_key(self._db, logger=self._logger)

    def __iter__(self) -> Iterator[int]:
        return self

    def __next__(self) -> int:
        return self.next()


__all__ = [
    "UniqueKeyError",
    "UniqueKeyGenerator",
    "next_unique_key",
]
