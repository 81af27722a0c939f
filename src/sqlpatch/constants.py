"""Stable constants shared across sqlpatch modules."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Bookkeeping tables owned by the patch engine.
VERSION_TABLE: Final[str] = "version"
GKEY_TABLE: Final[str] = "gkey"

# Savepoint reused for every patch attempt (patches never run concurrently).
DEFAULT_PATCH_SAVEPOINT_NAME: Final[str] = "patchupdate"

# Highest patch id reserved for internally-defined patches.
MAX_INTERNAL_PATCH_ID: Final[int] = 0

# Connection defaults.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_JOURNAL_MODE: Final[str] = "wal"
JOURNAL_MODES: Final[tuple[str, ...]] = ("delete", "truncate", "persist", "memory", "wal", "off")
IN_MEMORY_DATABASE: Final[str] = ":memory:"

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_DATABASE_PATH: Final[PurePosixPath] = STATE_DIR / "sqlpatch.sqlite3"
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_DATABASE_PATH",
    "DEFAULT_JOURNAL_MODE",
    "DEFAULT_LOG_DIR",
    "DEFAULT_PATCH_SAVEPOINT_NAME",
    "GKEY_TABLE",
    "IN_MEMORY_DATABASE",
    "JOURNAL_MODES",
    "MAX_INTERNAL_PATCH_ID",
    "STATE_DIR",
    "VERSION_TABLE",
]
