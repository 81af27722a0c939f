"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Final

from sqlpatch.persistence import PatchRecord, SQLDb

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TEST_DB_FILENAME: Final[str] = "sqlpatch.sqlite3"


class PatchFailure(RuntimeError):
    """Raised by test patch actions that are meant to fail."""


class Interrupted(BaseException):
    """Stands in for KeyboardInterrupt/SystemExit escaping a block."""


def db_path(root: Path) -> Path:
    return root / "state" / TEST_DB_FILENAME


def create_table_patch(
    patch_id: int, table: str, columns: str = "id INTEGER PRIMARY KEY"
) -> PatchRecord:
    if not _IDENTIFIER_RE.fullmatch(table):
        raise ValueError(f"invalid table name {table!r}")

    def _action(db: SQLDb) -> None:
        db.create_table(f"{table} ({columns})")

    return PatchRecord(id=patch_id, action=_action)


def failing_patch(patch_id: int, *, write_first: str | None = None) -> PatchRecord:
    """Patch that optionally writes ``write_first`` into ``probe`` and then raises."""

    def _action(db: SQLDb) -> None:
        if write_first is not None:
            db.exec("INSERT INTO probe (value) VALUES (?)", (write_first,))
        raise PatchFailure(f"patch {patch_id} failed on purpose")

    return PatchRecord(id=patch_id, action=_action)


def probe_table_patch(patch_id: int) -> PatchRecord:
    return create_table_patch(patch_id, "probe", "value TEXT NOT NULL")


def table_names(db: SQLDb) -> set[str]:
    names: set[str] = set()
    db.multi_query(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'",
        lambda row: names.add(str(row["name"])),
    )
    return names


def version_ids(db: SQLDb) -> list[int]:
    ids: list[int] = []
    if not db.table_exists("version"):
        return ids
    db.multi_query(
        "SELECT patchid FROM version ORDER BY patchid",
        lambda row: ids.append(int(row["patchid"])),
    )
    return ids


__all__ = [
    "Interrupted",
    "PatchFailure",
    "TEST_DB_FILENAME",
    "create_table_patch",
    "db_path",
    "failing_patch",
    "probe_table_patch",
    "table_names",
    "version_ids",
]
