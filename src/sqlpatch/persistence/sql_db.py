"""
sqlpatch — SQLite handle with transaction and savepoint primitives.

File: src/sqlpatch/persistence/sql_db.py
Last updated: 2026-10-19

Purpose
- Own one SQLite connection and expose statement, query, DDL, transaction,
  and savepoint operations on it.

What should be included in this file
- Connection lifecycle (open/configure/close) and settings.
- Scoped cursor handling for every statement and query.
- BEGIN/COMMIT/ROLLBACK plus named savepoints and their commit-or-rollback combinators.
- Error taxonomy carrying statement text and driver error text.

Functional requirements
- Rolling back to a savepoint must also release it.
- A rollback failure while unwinding from an error is logged, never surfaced.

Non-functional requirements
- No retries: busy/locked errors surface to the caller as-is.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, TypeVar

import structlog

from sqlpatch.constants import (
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_JOURNAL_MODE,
    IN_MEMORY_DATABASE,
    JOURNAL_MODES,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
T = TypeVar("T")

_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_QUALIFIED_NAME_RE: Final[re.Pattern[str]] = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?$"
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class SQLDbError(RuntimeError):
    """Base class for sqlpatch database errors."""


class DatabaseConnectionError(SQLDbError):
    """Raised when the database file cannot be opened or configured."""


class DatabaseClosedError(SQLDbError):
    """Raised when an operation is attempted on a closed handle."""


class StatementError(SQLDbError):
    """Raised when a statement or query fails; carries the offending SQL."""

    def __init__(self, message: str, *, statement: str, driver_message: str) -> None:
        super().__init__(message)
        self.statement = statement
        self.driver_message = driver_message


class DatabaseBusyError(StatementError):
    """Raised when SQLite reports the database as busy or locked."""


class DatabaseCorruptionError(StatementError):
    """Raised when SQLite reports possible corruption."""


class ConstraintViolationError(StatementError):
    """Raised when a statement violates a table constraint."""


class RowNotFoundError(SQLDbError):
    """Raised when a required single row is missing."""


@dataclass(frozen=True, slots=True)
class DatabaseSettings:
    """Connection pragmas applied on open."""

    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    journal_mode: str | None = DEFAULT_JOURNAL_MODE
    foreign_keys: bool = True

    def __post_init__(self) -> None:
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if self.journal_mode is not None and self.journal_mode.lower() not in JOURNAL_MODES:
            allowed = ", ".join(JOURNAL_MODES)
            raise ValueError(f"journal_mode must be one of: {allowed}; got {self.journal_mode!r}")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> DatabaseSettings:
        """Build settings from the ``[database]`` section of a loaded config."""

        section = config.get("database")
        if not isinstance(section, Mapping):
            return cls()
        busy_timeout_ms = section.get("busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS)
        journal_mode = section.get("journal_mode", DEFAULT_JOURNAL_MODE)
        foreign_keys = section.get("foreign_keys", True)
        if not isinstance(busy_timeout_ms, int) or isinstance(busy_timeout_ms, bool):
            raise ValueError("database.busy_timeout_ms must be an integer")
        if journal_mode is not None and not isinstance(journal_mode, str):
            raise ValueError("database.journal_mode must be a string")
        return cls(
            busy_timeout_ms=busy_timeout_ms,
            journal_mode=journal_mode,
            foreign_keys=bool(foreign_keys),
        )


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of a successfully executed statement."""

    rowcount: int
    last_row_id: int | None


class SQLDb:
    """One SQLite connection with explicit transaction and savepoint control.

    The connection runs in autocommit mode (``isolation_level=None``), so no
    transaction exists unless ``begin_trans`` or ``create_savepoint`` opens one.
    Use :meth:`open` rather than the constructor.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        path: Path | str,
        logger: Any | None = None,
    ) -> None:
        self._conn: sqlite3.Connection | None = conn
        self._path = path
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        settings: DatabaseSettings | None = None,
        logger: Any | None = None,
    ) -> SQLDb:
        """Open (creating if needed) the database file at ``path``."""

        if not isinstance(path, (str, Path)):
            raise TypeError(
                f"SQLDb.open(path) expects str or pathlib.Path; got {type(path).__name__}."
            )
        resolved_settings = settings if settings is not None else DatabaseSettings()
        in_memory = str(path) == IN_MEMORY_DATABASE
        target: Path | str = IN_MEMORY_DATABASE if in_memory else Path(path).expanduser()

        if isinstance(target, Path):
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DatabaseConnectionError(f"open failed for {target}: {exc}") from exc

        try:
            conn = sqlite3.connect(
                target,
                timeout=resolved_settings.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise DatabaseConnectionError(f"open failed for {target}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            _configure_connection(conn, resolved_settings, in_memory=in_memory)
        except sqlite3.Error as exc:
            conn.close()
            raise DatabaseConnectionError(f"open failed for {target}: {exc}") from exc

        db = cls(conn, path=target, logger=logger)
        db._logger.debug("database_opened", database=str(target))
        return db

    @property
    def path(self) -> Path | str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def in_transaction(self) -> bool:
        return self._require_open().in_transaction

    def close(self) -> None:
        """Close the connection; a second call is a no-op."""

        conn = self._conn
        if conn is None:
            return
        self._conn = None
        try:
            conn.close()
        except sqlite3.Error as exc:
            raise SQLDbError(f"close failed for {self._path}: {exc}") from exc

    def __enter__(self) -> SQLDb:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    # ---- statements -----------------------------------------------------

    def exec(self, stmt: str, params: SQLParams = ()) -> ExecResult:
        """Execute a parameterized statement and describe its effect."""

        return self._execute(stmt, params, operation="execute statement")

    @contextmanager
    def query(self, stmt: str, params: SQLParams = ()) -> Iterator[Iterator[sqlite3.Row]]:
        """Run a query and yield a row iterator; the cursor is closed on every exit path."""

        cursor = self._require_open().cursor()
        with closing(cursor):
            try:
                cursor.execute(stmt, tuple(params))
            except sqlite3.Error as exc:
                raise self._statement_error(exc, stmt, operation="query") from exc
            yield self._iter_rows(cursor, stmt)

    def single_query(self, stmt: str, params: SQLParams = ()) -> sqlite3.Row | None:
        """Return the first row of a query, or ``None`` when it has no rows."""

        with self.query(stmt, params) as rows:
            return next(rows, None)

    def multi_query(
        self,
        stmt: str,
        action: Callable[[sqlite3.Row], bool | None],
        params: SQLParams = (),
    ) -> bool:
        """Call ``action`` per row; stop and return False when it returns False."""

        with self.query(stmt, params) as rows:
            for row in rows:
                if action(row) is False:
                    return False
        return True

    def table_exists(self, name: str) -> bool:
        row = self.single_query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    # ---- transactions ---------------------------------------------------

    def begin_trans(self) -> None:
        self._execute("BEGIN", (), operation="begin transaction")

    def commit_trans(self) -> None:
        self._execute("COMMIT", (), operation="commit transaction")

    def rollback_trans(self) -> None:
        self._execute("ROLLBACK", (), operation="rollback transaction")

    def commit_on_success(self, success: bool) -> None:
        """Commit when ``success`` is true, otherwise roll back."""

        if success:
            self.commit_trans()
        else:
            self.rollback_trans()

    def commit_on_no_error(self, err: BaseException | None) -> None:
        """Commit when ``err`` is None; otherwise roll back and re-raise ``err``.

        A failing rollback is logged so that ``err`` stays the surfaced error.
        """

        if err is None:
            self.commit_trans()
            return
        self._rollback_quietly(self.rollback_trans, cause=err, scope="transaction")
        raise err

    @contextmanager
    def transaction(self) -> Iterator[SQLDb]:
        """Run the block in a top-level transaction, committing on success."""

        self.begin_trans()
        try:
            yield self
        except BaseException as exc:
            self.commit_on_no_error(exc)
        else:
            self.commit_on_no_error(None)

    # ---- savepoints -----------------------------------------------------

    def create_savepoint(self, name: str) -> None:
        savepoint = validate_savepoint_name(name)
        self._execute(f"SAVEPOINT {savepoint}", (), operation="create savepoint")

    def commit_savepoint(self, name: str) -> None:
        """Release the savepoint, folding its changes into the parent transaction."""

        savepoint = validate_savepoint_name(name)
        self._execute(f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")

    def rollback_savepoint(self, name: str) -> None:
        """Undo changes since the savepoint, then release it.

        ROLLBACK TO leaves the savepoint open, so it is released afterwards.
        If the rollback itself fails the release is not attempted.
        """

        savepoint = validate_savepoint_name(name)
        self._execute(
            f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback to savepoint"
        )
        self._execute(f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")

    def commit_savepoint_on_success(self, name: str, success: bool) -> None:
        if success:
            self.commit_savepoint(name)
        else:
            self.rollback_savepoint(name)

    def commit_savepoint_on_no_error(self, name: str, err: BaseException | None) -> None:
        """Release the savepoint when ``err`` is None; otherwise roll it back and re-raise."""

        if err is None:
            self.commit_savepoint(name)
            return
        self._rollback_quietly(
            lambda: self.rollback_savepoint(name),
            cause=err,
            scope="savepoint",
            savepoint=name,
        )
        raise err

    def exec_with_savepoint(self, name: str, fn: Callable[[SQLDb], T]) -> T:
        """Run ``fn`` atomically inside a savepoint nested in any open transaction."""

        self.create_savepoint(name)
        try:
            result = fn(self)
        except BaseException as exc:
            self.commit_savepoint_on_no_error(name, exc)
            raise
        self.commit_savepoint(name)
        return result

    @contextmanager
    def savepoint(self, name: str) -> Iterator[SQLDb]:
        """Context-manager form of :meth:`exec_with_savepoint`."""

        self.create_savepoint(name)
        try:
            yield self
        except BaseException as exc:
            self.commit_savepoint_on_no_error(name, exc)
        else:
            self.commit_savepoint(name)

    # ---- DDL ------------------------------------------------------------

    def create_table(self, definition: str) -> None:
        """Create a table, e.g. ``create_table("IF NOT EXISTS t (id INTEGER)")``."""

        self._execute(f"CREATE TABLE {definition}", (), operation="create table")

    def drop_table(self, name: str) -> None:
        """Drop a table; dropping a missing table succeeds."""

        table = _qualified_name(name)
        self._execute(f"DROP TABLE IF EXISTS {table}", (), operation="drop table")

    def create_index(self, definition: str) -> None:
        self._execute(f"CREATE INDEX {definition}", (), operation="create index")

    def drop_index(self, name: str) -> None:
        """Drop an index; dropping a missing index is an error."""

        index = _qualified_name(name)
        self._execute(f"DROP INDEX {index}", (), operation="drop index")

    # ---- internals ------------------------------------------------------

    def _require_open(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseClosedError(f"database handle for {self._path} is closed")
        return self._conn

    def _execute(self, stmt: str, params: SQLParams, *, operation: str) -> ExecResult:
        cursor = self._require_open().cursor()
        with closing(cursor):
            try:
                cursor.execute(stmt, tuple(params))
            except sqlite3.Error as exc:
                raise self._statement_error(exc, stmt, operation=operation) from exc
            return ExecResult(rowcount=cursor.rowcount, last_row_id=cursor.lastrowid)

    def _iter_rows(self, cursor: sqlite3.Cursor, stmt: str) -> Iterator[sqlite3.Row]:
        while True:
            try:
                row = cursor.fetchone()
            except sqlite3.Error as exc:
                raise self._statement_error(exc, stmt, operation="fetch rows") from exc
            if row is None:
                return
            yield row

    def _rollback_quietly(
        self,
        rollback: Callable[[], None],
        *,
        cause: BaseException,
        **fields: str,
    ) -> None:
        try:
            rollback()
        except SQLDbError as exc:
            self._logger.error(
                "rollback_failed",
                database=str(self._path),
                error=str(exc),
                cause=str(cause),
                **fields,
            )

    def _statement_error(
        self,
        exc: sqlite3.Error,
        stmt: str,
        *,
        operation: str,
    ) -> StatementError:
        statement = " ".join(stmt.split())
        message = f"{operation} failed for {self._path}: {exc} [statement: {statement}]"
        self._logger.debug(
            "statement_failed",
            database=str(self._path),
            operation=operation,
            statement=statement,
            error=str(exc),
        )
        error_type: type[StatementError]
        if isinstance(exc, sqlite3.IntegrityError):
            error_type = ConstraintViolationError
        elif _is_corruption_error(exc):
            error_type = DatabaseCorruptionError
        elif _is_busy_error(exc):
            error_type = DatabaseBusyError
        else:
            error_type = StatementError
        return error_type(message, statement=statement, driver_message=str(exc))


def _configure_connection(
    conn: sqlite3.Connection,
    settings: DatabaseSettings,
    *,
    in_memory: bool,
) -> None:
    conn.execute(f"PRAGMA busy_timeout={settings.busy_timeout_ms}")
    conn.execute(f"PRAGMA foreign_keys={'ON' if settings.foreign_keys else 'OFF'}")
    # Reads the header, so a file that is not a database fails here.
    conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    if settings.journal_mode is None or in_memory:
        return
    requested = settings.journal_mode.lower()
    journal_row = conn.execute(f"PRAGMA journal_mode={requested}").fetchone()
    if journal_row is None:
        raise sqlite3.OperationalError("failed to configure journal_mode")
    journal_mode = str(journal_row[0]).lower()
    if journal_mode != requested:
        raise sqlite3.OperationalError(
            f"journal_mode must be {requested}, got {journal_mode!r}"
        )


def validate_savepoint_name(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_RE.fullmatch(name):
        raise ValueError(f"savepoint name must be a plain SQL identifier; got {name!r}")
    return name


def _qualified_name(name: str) -> str:
    if not isinstance(name, str) or not _QUALIFIED_NAME_RE.fullmatch(name):
        raise ValueError(f"expected a table or index name; got {name!r}")
    return name


def _is_busy_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def _is_corruption_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)


__all__ = [
    "ConstraintViolationError",
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseConnectionError",
    "DatabaseCorruptionError",
    "DatabaseSettings",
    "ExecResult",
    "RowNotFoundError",
    "SQLDb",
    "SQLDbError",
    "SQLParams",
    "SQLValue",
    "StatementError",
    "validate_savepoint_name",
]
