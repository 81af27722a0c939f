"""
sqlpatch — runtime config loader.

File: src/sqlpatch/config/loader.py
Last updated: 2026-10-19

Purpose
- Build the effective config from four layers, lowest first: built-in defaults,
  ``sqlpatch.toml``, ``SQLPATCH_<SECTION>_<FIELD>`` environment variables, and
  caller overrides keyed ``"section.field"``.

Functional requirements
- Environment strings are coerced to the field's declared type.
- Relative path fields resolve against the config file's directory;
  ``:memory:`` is left as is.
- The merged result is validated before it is returned.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from sqlpatch.config.schema import FIELDS, Config, FieldSpec, default_config, validate_config
from sqlpatch.constants import IN_MEMORY_DATABASE

DEFAULT_CONFIG_FILE: Final[str] = "sqlpatch.toml"
ENV_PREFIX: Final[str] = "SQLPATCH_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """Raised when the config file or an override value cannot be read."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Return the validated effective config.

    Without ``config_path``, ``./sqlpatch.toml`` is read when present; an
    explicit path that does not exist is an error.
    """

    path = Path(config_path if config_path is not None else DEFAULT_CONFIG_FILE)
    path = path.expanduser().resolve()
    layers = (
        _read_toml(path, required=config_path is not None),
        _env_layer(os.environ if environ is None else environ),
        _override_layer(cli_overrides or {}),
    )

    merged: dict[str, Any] = default_config()
    for layer in layers:
        merged = _overlay(merged, layer)
    return _resolve_paths(validate_config(merged), base_dir=path.parent)


def env_var_name(spec: FieldSpec) -> str:
    return f"{ENV_PREFIX}{spec.section}_{spec.name}".upper()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, dict[str, object]]:
    layer: dict[str, dict[str, object]] = {}
    for spec in FIELDS:
        if not spec.env_overridable:
            continue
        name = env_var_name(spec)
        raw = environ.get(name)
        if raw is not None:
            layer.setdefault(spec.section, {})[spec.name] = _parse_env_value(spec, name, raw)
    return layer


def _parse_env_value(spec: FieldSpec, env_name: str, raw: str) -> object:
    value = raw.strip()
    if spec.kind is int:
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer, got {raw!r}") from exc
    if spec.kind is bool:
        lowered = value.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ConfigLoadError(
            f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off), got {raw!r}"
        )
    return value


def _override_layer(overrides: Mapping[str, object]) -> dict[str, dict[str, object]]:
    layer: dict[str, dict[str, object]] = {}
    for key, value in overrides.items():
        section, _, name = key.partition(".")
        if not section or not name or "." in name:
            raise ConfigLoadError(f"override keys look like 'section.field'; got {key!r}")
        layer.setdefault(section, {})[name] = value
    return layer


def _overlay(base: Mapping[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    merged = {
        key: dict(value) if isinstance(value, Mapping) else value for key, value in base.items()
    }
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            current.update(value)
        else:
            # Non-table values are kept so validation can report them.
            merged[key] = dict(value) if isinstance(value, Mapping) else value
    return merged


def _resolve_paths(config: Config, *, base_dir: Path) -> Config:
    for spec in FIELDS:
        if not spec.is_path:
            continue
        raw = config[spec.section][spec.name]
        if raw == IN_MEMORY_DATABASE:
            continue
        candidate = Path(os.path.expandvars(raw)).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        config[spec.section][spec.name] = Path(os.path.normpath(candidate)).as_posix()
    return config


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "env_var_name",
    "load_config",
]
