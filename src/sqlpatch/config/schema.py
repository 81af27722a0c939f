"""
sqlpatch — configuration fields and validation.

File: src/sqlpatch/config/schema.py
Last updated: 2026-10-19

Purpose
- Declare every config field once, with its section, type, default and constraint.

What should be included in this file
- The FIELDS table; defaults, validation, env bindings and path resolution
  are all driven from it.
- Structured validation issues (dotted field path + message).

Functional requirements
- Unknown sections or fields and wrongly typed values are reported, never ignored.
- Every issue in a payload is reported at once, in a stable order.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from sqlpatch.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_DATABASE_PATH,
    DEFAULT_JOURNAL_MODE,
    DEFAULT_LOG_DIR,
    DEFAULT_PATCH_SAVEPOINT_NAME,
    JOURNAL_MODES,
)
from sqlpatch.persistence.sql_db import validate_savepoint_name

ConfigValue = str | int | bool
Config = dict[str, dict[str, Any]]

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """One scalar config field.

    ``normalize`` runs before ``check``; ``check`` raises ``ValueError`` with
    the message to report.
    """

    section: str
    name: str
    kind: type[str] | type[int] | type[bool]
    default: ConfigValue
    normalize: Callable[[Any], Any] | None = None
    check: Callable[[Any], object] | None = None
    is_path: bool = False
    env_overridable: bool = True

    @property
    def dotted(self) -> str:
        return f"{self.section}.{self.name}"


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when a config payload fails validation; ``issues`` lists every problem."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


def _check_schema_version(value: int) -> None:
    if value < CONFIG_SCHEMA_VERSION:
        raise ValueError(
            f"schema version {value} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "update sqlpatch.toml"
        )
    if value > CONFIG_SCHEMA_VERSION:
        raise ValueError(
            f"schema version {value} is newer than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade the sqlpatch runtime"
        )


def _check_non_negative(value: int) -> None:
    if value < 0:
        raise ValueError("must be >= 0")


def _check_path_text(value: str) -> None:
    if "\x00" in value:
        raise ValueError("must not contain NUL bytes")


def _one_of(allowed: Sequence[str]) -> Callable[[str], None]:
    def check(value: str) -> None:
        if value not in allowed:
            raise ValueError(f"invalid value {value!r}; expected one of: {', '.join(allowed)}")

    return check


FIELDS: Final[tuple[FieldSpec, ...]] = (
    FieldSpec(
        "meta",
        "schema_version",
        int,
        CONFIG_SCHEMA_VERSION,
        check=_check_schema_version,
        env_overridable=False,
    ),
    FieldSpec(
        "database",
        "path",
        str,
        DEFAULT_DATABASE_PATH.as_posix(),
        check=_check_path_text,
        is_path=True,
    ),
    FieldSpec(
        "database",
        "busy_timeout_ms",
        int,
        DEFAULT_BUSY_TIMEOUT_MS,
        check=_check_non_negative,
    ),
    FieldSpec(
        "database",
        "journal_mode",
        str,
        DEFAULT_JOURNAL_MODE,
        normalize=str.lower,
        check=_one_of(JOURNAL_MODES),
    ),
    FieldSpec("database", "foreign_keys", bool, True),
    FieldSpec(
        "patching",
        "savepoint_name",
        str,
        DEFAULT_PATCH_SAVEPOINT_NAME,
        check=validate_savepoint_name,
    ),
    FieldSpec(
        "observability",
        "log_level",
        str,
        "INFO",
        normalize=str.upper,
        check=_one_of(LOG_LEVELS),
    ),
    FieldSpec(
        "observability",
        "log_dir",
        str,
        DEFAULT_LOG_DIR.as_posix(),
        check=_check_path_text,
        is_path=True,
    ),
    FieldSpec("observability", "log_to_stderr", bool, True),
)

SECTIONS: Final[tuple[str, ...]] = tuple(dict.fromkeys(spec.section for spec in FIELDS))

_KIND_NAMES: Final[dict[type, str]] = {str: "string", int: "integer", bool: "boolean"}


def default_config() -> Config:
    """Return a fresh copy of the built-in defaults."""

    config: Config = {}
    for spec in FIELDS:
        config.setdefault(spec.section, {})[spec.name] = spec.default
    return config


def validate_config(config: object) -> Config:
    """Return a normalized copy of ``config`` or raise ``ConfigValidationError``."""

    if not isinstance(config, Mapping):
        issue = ConfigValidationIssue("<root>", f"expected table, got {type(config).__name__}")
        raise ConfigValidationError([issue])

    issues = [
        ConfigValidationIssue(key, "unknown section")
        for key in sorted(map(str, config))
        if key not in SECTIONS
    ]
    validated: Config = {}
    for section in SECTIONS:
        raw = config.get(section)
        if raw is None:
            issues.append(ConfigValidationIssue(section, "missing required section"))
            continue
        if not isinstance(raw, Mapping):
            issues.append(
                ConfigValidationIssue(section, f"expected table, got {type(raw).__name__}")
            )
            continue
        specs = {spec.name: spec for spec in FIELDS if spec.section == section}
        issues.extend(
            ConfigValidationIssue(f"{section}.{key}", "unknown field")
            for key in sorted(map(str, raw))
            if key not in specs
        )
        out = validated.setdefault(section, {})
        for name, spec in specs.items():
            if name not in raw:
                issues.append(ConfigValidationIssue(spec.dotted, "missing required field"))
                continue
            try:
                out[name] = _coerce(spec, raw[name])
            except ValueError as exc:
                issues.append(ConfigValidationIssue(spec.dotted, str(exc)))

    if issues:
        raise ConfigValidationError(issues)
    return validated


def _coerce(spec: FieldSpec, value: object) -> ConfigValue:
    # bool is an int subclass, so the checks are exact.
    if spec.kind is bool:
        valid = isinstance(value, bool)
    elif spec.kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, str)
    if not valid:
        raise ValueError(f"expected {_KIND_NAMES[spec.kind]}, got {type(value).__name__}")

    result: Any = value
    if isinstance(result, str):
        result = result.strip()
        if not result:
            raise ValueError("must not be empty")
    if spec.normalize is not None:
        result = spec.normalize(result)
    if spec.check is not None:
        spec.check(result)
    return result


__all__ = [
    "FIELDS",
    "LOG_LEVELS",
    "SECTIONS",
    "Config",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValue",
    "FieldSpec",
    "default_config",
    "validate_config",
]
