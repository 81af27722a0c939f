"""
sqlpatch — persistence package

File: src/sqlpatch/persistence/__init__.py
Last updated: 2026-10-19

Purpose
- SQLite handle with transaction/savepoint primitives, the patch engine, and
  the unique-key generator built on them.

Functional requirements
- Must support safe resume after a crash mid-patch.

Non-functional requirements
- SQLite-first; one connection per handle, used serially.
"""

from sqlpatch.persistence.patching import (
    INTERNAL_PATCHES,
    PatchAction,
    PatchEngine,
    PatchError,
    PatchRecord,
    applied_patch_ids,
    apply_patches,
    open_and_patch_db,
    open_and_patch_from_config,
    open_db,
)
from sqlpatch.persistence.sql_db import (
    ConstraintViolationError,
    DatabaseBusyError,
    DatabaseClosedError,
    DatabaseConnectionError,
    DatabaseCorruptionError,
    DatabaseSettings,
    ExecResult,
    RowNotFoundError,
    SQLDb,
    SQLDbError,
    StatementError,
)
from sqlpatch.persistence.unique_keys import (
    UniqueKeyError,
    UniqueKeyGenerator,
    next_unique_key,
)

__all__ = [
    "INTERNAL_PATCHES",
    "ConstraintViolationError",
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseConnectionError",
    "DatabaseCorruptionError",
    "DatabaseSettings",
    "ExecResult",
    "PatchAction",
    "PatchEngine",
    "PatchError",
    "PatchRecord",
    "RowNotFoundError",
    "SQLDb",
    "SQLDbError",
    "StatementError",
    "UniqueKeyError",
    "UniqueKeyGenerator",
    "applied_patch_ids",
    "apply_patches",
    "next_unique_key",
    "open_and_patch_db",
    "open_and_patch_from_config",
    "open_db",
]
