"""
sqlpatch — package root

File: src/sqlpatch/__init__.py
Last updated: 2026-10-19

Purpose
- Exactly-once schema/data patching and savepoint-based transactions for SQLite.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
"""

from sqlpatch.persistence import (
    PatchEngine,
    PatchError,
    PatchRecord,
    SQLDb,
    SQLDbError,
    apply_patches,
    next_unique_key,
    open_and_patch_db,
    open_db,
)

__version__ = "0.1.0"

__all__ = [
    "PatchEngine",
    "PatchError",
    "PatchRecord",
    "SQLDb",
    "SQLDbError",
    "__version__",
    "apply_patches",
    "next_unique_key",
    "open_and_patch_db",
    "open_db",
]
