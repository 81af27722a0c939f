"""
sqlpatch — exactly-once patch application engine.

File: src/sqlpatch/persistence/patching.py
Last updated: 2026-10-19

Purpose
- Apply an ordered list of patch records to a database at most once each,
  recording every committed patch id in the ``version`` table.

What should be included in this file
- PatchRecord and the internal bootstrap patches (``version``, ``gkey``).
- The per-patch check/begin/apply/record/finalize loop.
- open/open-and-patch entrypoints used by host applications.

Functional requirements
- Internal patches (ids <= 0) run before caller patches, in list order.
- A failed patch leaves neither a version row nor partial writes behind.
- The first failure aborts the remaining patches.

Non-functional requirements
- No hidden shared state: the savepoint name is an engine attribute.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from sqlpatch.constants import (
    DEFAULT_PATCH_SAVEPOINT_NAME,
    GKEY_TABLE,
    MAX_INTERNAL_PATCH_ID,
    VERSION_TABLE,
)
from sqlpatch.observability.logging import correlation_scope
from sqlpatch.persistence.sql_db import (
    DatabaseSettings,
    SQLDb,
    SQLDbError,
    validate_savepoint_name,
)

PatchAction = Callable[[SQLDb], None]


class PatchError(SQLDbError):
    """Raised when a patch action or its version bookkeeping fails.

    ``db`` holds the still-open handle when the error comes from
    :func:`open_and_patch_db`, so the caller keeps a usable connection.
    """

    def __init__(self, patch_id: int, message: str, *, db: SQLDb | None = None) -> None:
        super().__init__(message)
        self.patch_id = patch_id
        self.db = db


@dataclass(frozen=True, slots=True)
class PatchRecord:
    """A uniquely identified one-time database mutation.

    Ids need only be unique, though the convention is sequential. Ids <= 0
    are reserved for internal patches. ``action`` signals failure by raising.
    """

    id: int
    action: PatchAction


def _create_version_table(db: SQLDb) -> None:
    db.create_table(f"IF NOT EXISTS {VERSION_TABLE} (patchid INTEGER PRIMARY KEY)")


def _create_gkey_table(db: SQLDb) -> None:
    db.create_table(f"IF NOT EXISTS {GKEY_TABLE} (next INTEGER PRIMARY KEY)")
    # Seeds only an empty table; the table must never hold more than one row.
    db.exec(
        f"INSERT INTO {GKEY_TABLE} (next) "
        f"SELECT ? WHERE NOT EXISTS (SELECT 1 FROM {GKEY_TABLE})",
        (1,),
    )


INTERNAL_PATCHES: Final[tuple[PatchRecord, ...]] = (
    PatchRecord(id=0, action=_create_version_table),
    PatchRecord(id=-1, action=_create_gkey_table),
)


class PatchEngine:
    """Applies patch records exactly once each, one savepoint per patch."""

    def __init__(
        self,
        *,
        savepoint_name: str = DEFAULT_PATCH_SAVEPOINT_NAME,
        logger: Any | None = None,
    ) -> None:
        self._savepoint_name = validate_savepoint_name(savepoint_name)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        logger: Any | None = None,
    ) -> PatchEngine:
        """Build an engine from the ``[patching]`` section of a loaded config."""

        section = config.get("patching")
        savepoint_name = DEFAULT_PATCH_SAVEPOINT_NAME
        if isinstance(section, Mapping):
            raw = section.get("savepoint_name", DEFAULT_PATCH_SAVEPOINT_NAME)
            if not isinstance(raw, str):
                raise ValueError("patching.savepoint_name must be a string")
            savepoint_name = raw
        return cls(savepoint_name=savepoint_name, logger=logger)

    @property
    def savepoint_name(self) -> str:
        return self._savepoint_name

    def apply(self, db: SQLDb, patches: Iterable[PatchRecord] | None = None) -> None:
        """Run the internal patches, then ``patches``, skipping applied ids."""

        with correlation_scope(database=str(db.path)):
            self._apply_all(db, INTERNAL_PATCHES)
            if patches is not None:
                self._apply_all(db, patches)

    def is_patched(self, db: SQLDb, patch_id: int) -> bool:
        """Return whether ``patch_id`` has a version row.

        A missing version table means nothing has been applied yet; any other
        query failure propagates instead of reading as "not applied".
        """

        if not db.table_exists(VERSION_TABLE):
            return False
        row = db.single_query(
            f"SELECT patchid FROM {VERSION_TABLE} WHERE patchid = ?",
            (patch_id,),
        )
        return row is not None

    def _apply_all(self, db: SQLDb, patches: Iterable[PatchRecord]) -> None:
        # Does not detect a database patched by a newer patch list.
        for patch in patches:
            with correlation_scope(patch_id=patch.id, savepoint=self._savepoint_name):
                self._apply_one(db, patch)

    def _apply_one(self, db: SQLDb, patch: PatchRecord) -> None:
        try:
            patched = self.is_patched(db, patch.id)
        except SQLDbError as exc:
            self._logger.error("patch_failed", patch_id=patch.id, stage="check", error=str(exc))
            raise PatchError(
                patch.id,
                f"could not check patch {patch.id} on {db.path}: {exc}",
            ) from exc
        if patched:
            self._logger.debug("patch_skipped", patch_id=patch.id)
            return

        try:
            db.create_savepoint(self._savepoint_name)
        except SQLDbError as exc:
            self._logger.error("patch_failed", patch_id=patch.id, stage="begin", error=str(exc))
            raise PatchError(
                patch.id,
                f"could not begin patch {patch.id} on {db.path}: {exc}",
            ) from exc

        try:
            patch.action(db)
            db.exec(
                f"INSERT OR FAIL INTO {VERSION_TABLE} (patchid) VALUES (?)",
                (patch.id,),
            )
        except BaseException as exc:
            self._logger.error(
                "patch_failed",
                patch_id=patch.id,
                stage="apply",
                error=str(exc) or type(exc).__name__,
            )
            self._rollback_patch(db, patch, exc)
            # Interrupts propagate unwrapped once the savepoint is undone.
            if not isinstance(exc, Exception):
                raise
            raise PatchError(
                patch.id,
                f"could not patch {db.path} to version {patch.id}: {exc}",
            ) from exc

        try:
            db.commit_savepoint(self._savepoint_name)
        except SQLDbError as exc:
            self._logger.error("patch_failed", patch_id=patch.id, stage="commit", error=str(exc))
            self._rollback_patch(db, patch, exc)
            raise PatchError(
                patch.id,
                f"could not commit patch {patch.id} on {db.path}: {exc}",
            ) from exc

        kind = "internal" if patch.id <= MAX_INTERNAL_PATCH_ID else "user"
        self._logger.info("patch_applied", patch_id=patch.id, kind=kind)

    def _rollback_patch(self, db: SQLDb, patch: PatchRecord, cause: BaseException) -> None:
        try:
            db.rollback_savepoint(self._savepoint_name)
        except SQLDbError as exc:
            self._logger.error(
                "rollback_failed",
                patch_id=patch.id,
                savepoint=self._savepoint_name,
                error=str(exc),
                cause=str(cause),
            )


def apply_patches(
    db: SQLDb,
    patches: Iterable[PatchRecord] | None = None,
    *,
    savepoint_name: str = DEFAULT_PATCH_SAVEPOINT_NAME,
) -> None:
    """Apply internal and caller patches to an open database."""

    PatchEngine(savepoint_name=savepoint_name).apply(db, patches)


def applied_patch_ids(db: SQLDb) -> tuple[int, ...]:
    """Return every recorded patch id in ascending order."""

    if not db.table_exists(VERSION_TABLE):
        return ()
    ids: list[int] = []
    db.multi_query(
        f"SELECT patchid FROM {VERSION_TABLE} ORDER BY patchid ASC",
        lambda row: ids.append(int(row["patchid"])),
    )
    return tuple(ids)


def open_db(
    path: str | Path,
    *,
    settings: DatabaseSettings | None = None,
) -> SQLDb:
    """Open a database without patching it."""

    return SQLDb.open(path, settings=settings)


def open_and_patch_db(
    path: str | Path,
    patches: Iterable[PatchRecord] | None = None,
    *,
    settings: DatabaseSettings | None = None,
    savepoint_name: str = DEFAULT_PATCH_SAVEPOINT_NAME,
    engine: PatchEngine | None = None,
) -> SQLDb:
    """Open a database and bring it up to date with ``patches``.

    Connection failures raise ``DatabaseConnectionError``. A patch failure
    raises ``PatchError`` whose ``db`` attribute is the open handle. An
    explicit ``engine`` takes precedence over ``savepoint_name``.
    """

    patch_engine = engine if engine is not None else PatchEngine(savepoint_name=savepoint_name)
    db = SQLDb.open(path, settings=settings)
    try:
        patch_engine.apply(db, patches)
    except PatchError as exc:
        exc.db = db
        raise
    except BaseException:
        db.close()
        raise
    return db


def open_and_patch_from_config(
    config: Mapping[str, Any],
    patches: Iterable[PatchRecord] | None = None,
) -> SQLDb:
    """Open ``database.path`` of a loaded config and apply ``patches``.

    Pragmas come from ``[database]`` and the savepoint name from ``[patching]``.
    """

    section = config.get("database")
    path = section.get("path") if isinstance(section, Mapping) else None
    if not isinstance(path, str):
        raise ValueError("config is missing database.path")
    return open_and_patch_db(
        path,
        patches,
        settings=DatabaseSettings.from_config(config),
        engine=PatchEngine.from_config(config),
    )


__all__ = [
    "INTERNAL_PATCHES",
    "PatchAction",
    "PatchEngine",
    "PatchError",
    "PatchRecord",
    "applied_patch_ids",
    "apply_patches",
    "open_and_patch_db",
    "open_and_patch_from_config",
    "open_db",
]
