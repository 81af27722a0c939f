"""
sqlpatch — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-19

Purpose
- Validate strict config schema behavior and structured errors.

What this test file should cover
- Validates the repository's live sqlpatch.toml successfully.
- Rejects unknown keys and invalid types with actionable paths.
- Normalization of case-insensitive enum fields and non-mutation of input.

Functional requirements
- No network usage.

Non-functional requirements
- Deterministic and fast.
"""

from __future__ import annotations

import copy
import tomllib
from pathlib import Path

import pytest

from sqlpatch.config.schema import (
    FIELDS,
    SECTIONS,
    ConfigValidationError,
    default_config,
    validate_config,
)
from sqlpatch.constants import CONFIG_SCHEMA_VERSION

REPO_ROOT = Path(__file__).resolve().parents[3]


def _load_toml(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    assert isinstance(data, dict)
    return data


def _issues(config: object) -> list[tuple[str, str]]:
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config(config)
    return [(issue.path, issue.message) for issue in exc_info.value.issues]


def test_sqlpatch_toml_validates_successfully() -> None:
    config = _load_toml(REPO_ROOT / "sqlpatch.toml")

    validated = validate_config(config)

    assert validated["meta"]["schema_version"] == CONFIG_SCHEMA_VERSION
    assert validated["observability"]["log_to_stderr"] is True
    assert set(validated) == set(SECTIONS)


def test_defaults_cover_every_field_and_validate() -> None:
    defaults = default_config()

    assert validate_config(defaults) == defaults
    assert sorted(spec.dotted for spec in FIELDS) == sorted(
        f"{section}.{name}" for section, fields in defaults.items() for name in fields
    )


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["database"]["busy_timeout_ms"] = 1

    assert default_config()["database"]["busy_timeout_ms"] == 5000


def test_unknown_sections_and_fields_are_reported_with_paths() -> None:
    config = default_config()
    config["extras"] = {"enabled": True}
    config["database"]["cache_size"] = 10
    config["observability"]["log_to_stdout"] = True

    assert _issues(config) == [
        ("extras", "unknown section"),
        ("database.cache_size", "unknown field"),
        ("observability.log_to_stdout", "unknown field"),
    ]


def test_wrong_types_are_reported_without_bool_int_confusion() -> None:
    config = default_config()
    config["database"]["busy_timeout_ms"] = True
    config["database"]["foreign_keys"] = 1
    config["patching"]["savepoint_name"] = 5

    assert _issues(config) == [
        ("database.busy_timeout_ms", "expected integer, got bool"),
        ("database.foreign_keys", "expected boolean, got int"),
        ("patching.savepoint_name", "expected string, got int"),
    ]


def test_missing_sections_and_fields_are_reported() -> None:
    config = default_config()
    del config["patching"]
    del config["database"]["journal_mode"]
    config["observability"] = "verbose"

    assert _issues(config) == [
        ("database.journal_mode", "missing required field"),
        ("patching", "missing required section"),
        ("observability", "expected table, got str"),
    ]


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["database"]) == [("<root>", "expected table, got list")]


@pytest.mark.parametrize(
    ("section", "field", "value", "message"),
    [
        ("database", "busy_timeout_ms", -1, "must be >= 0"),
        ("database", "path", "   ", "must not be empty"),
        ("database", "path", "bad\x00path", "must not contain NUL bytes"),
        (
            "database",
            "journal_mode",
            "fast",
            "invalid value 'fast'; expected one of: delete, truncate, persist, memory, wal, off",
        ),
        (
            "observability",
            "log_level",
            "trace",
            "invalid value 'TRACE'; expected one of: DEBUG, INFO, WARNING, ERROR",
        ),
        (
            "patching",
            "savepoint_name",
            "patch update",
            "savepoint name must be a plain SQL identifier; got 'patch update'",
        ),
    ],
)
def test_field_constraints_produce_actionable_messages(
    section: str, field: str, value: object, message: str
) -> None:
    config = default_config()
    config[section][field] = value

    assert _issues(config) == [(f"{section}.{field}", message)]


@pytest.mark.parametrize(
    ("version", "hint"),
    [
        (CONFIG_SCHEMA_VERSION - 1, "update sqlpatch.toml"),
        (CONFIG_SCHEMA_VERSION + 1, "upgrade the sqlpatch runtime"),
    ],
)
def test_schema_version_mismatch_names_the_fix(version: int, hint: str) -> None:
    config = default_config()
    config["meta"]["schema_version"] = version

    [(path, message)] = _issues(config)

    assert path == "meta.schema_version"
    assert message.endswith(hint)


def test_enum_fields_are_normalized_and_input_is_not_mutated() -> None:
    config = default_config()
    config["database"]["journal_mode"] = " DELETE "
    config["observability"]["log_level"] = "debug"
    snapshot = copy.deepcopy(config)

    validated = validate_config(config)

    assert validated["database"]["journal_mode"] == "delete"
    assert validated["observability"]["log_level"] == "DEBUG"
    assert config == snapshot


def test_error_message_lists_every_issue() -> None:
    config = default_config()
    config["database"]["busy_timeout_ms"] = -5
    config["observability"]["log_dir"] = ""

    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config(config)

    assert str(exc_info.value) == (
        "invalid config:\n"
        "- database.busy_timeout_ms: must be >= 0\n"
        "- observability.log_dir: must not be empty"
    )
