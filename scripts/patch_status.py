"""
sqlpatch — report patch status of a database.

Purpose
- Show which patch ids a database has recorded and the next unique key it would issue.
- Resolve the database and log destination from ``sqlpatch.toml`` (or ``--config``).
- Never mutate the target database.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect applied patches and the unique-key counter of a sqlpatch database.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to sqlpatch.toml (default: ./sqlpatch.toml when present).",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database; overrides database.path.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output.",
    )
    return parser.parse_args(argv)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    _ensure_src_path()
    from sqlpatch.config import load_config

    overrides: dict[str, object] = {}
    if args.db is not None:
        overrides["database.path"] = args.db.expanduser().resolve().as_posix()
    return load_config(args.config, cli_overrides=overrides)


def _read_status(config: Mapping[str, Any]) -> dict[str, object]:
    import structlog

    from sqlpatch.constants import GKEY_TABLE, VERSION_TABLE
    from sqlpatch.observability import correlation_scope
    from sqlpatch.persistence import DatabaseSettings, SQLDb, applied_patch_ids

    db_path = Path(config["database"]["path"])
    if not db_path.is_file():
        raise FileNotFoundError(f"database not found: {db_path.as_posix()}")

    # journal_mode=None leaves the file's journal untouched.
    settings = dataclasses.replace(DatabaseSettings.from_config(config), journal_mode=None)
    with (
        correlation_scope(database=db_path.as_posix()),
        SQLDb.open(db_path, settings=settings) as db,
    ):
        patch_ids = applied_patch_ids(db)
        next_key: int | None = None
        if db.table_exists(GKEY_TABLE):
            row = db.single_query(f"SELECT next FROM {GKEY_TABLE}")
            next_key = None if row is None else int(row["next"])
        payload: dict[str, object] = {
            "db_path": db_path.as_posix(),
            "patched": db.table_exists(VERSION_TABLE),
            "applied_patch_ids": list(patch_ids),
            "user_patch_count": sum(1 for patch_id in patch_ids if patch_id > 0),
            "next_unique_key": next_key,
        }
        structlog.get_logger("sqlpatch.scripts.patch_status").info(
            "status_reported",
            applied=len(patch_ids),
            next_unique_key=next_key,
        )
    return payload


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _emit_text(payload: Mapping[str, object]) -> None:
    print(f"db_path: {payload['db_path']}")
    print(f"patched: {payload['patched']}")
    ids_obj = payload.get("applied_patch_ids")
    ids = ids_obj if isinstance(ids_obj, list) else []
    rendered = ", ".join(str(item) for item in ids) if ids else "(none)"
    print(f"applied_patch_ids: {rendered}")
    print(f"user_patch_count: {payload['user_patch_count']}")
    print(f"next_unique_key: {payload['next_unique_key']}")


def _emit_error(args: argparse.Namespace, exc: Exception, db_path: str | None) -> int:
    if args.json:
        _emit_json({"db_path": db_path, "error": str(exc)})
    else:
        print(f"error: {exc}", file=sys.stderr)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        config = _load_effective_config(args)
    except ValueError as exc:
        return _emit_error(args, exc, None)

    from sqlpatch.observability import LoggingSettings, configure_logging

    db_path = str(config["database"]["path"])
    with configure_logging(LoggingSettings.from_config(config)):
        try:
            payload = _read_status(config)
        except Exception as exc:  # noqa: BLE001
            return _emit_error(args, exc, db_path)

    if args.json:
        _emit_json(payload)
    else:
        _emit_text(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
