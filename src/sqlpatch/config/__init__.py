"""
sqlpatch config package public API.

File: src/sqlpatch/config/__init__.py
Last updated: 2026-10-19

Purpose
- Export the loader, the field table and the error types callers catch.
"""

from sqlpatch.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    env_var_name,
    load_config,
)
from sqlpatch.config.schema import (
    FIELDS,
    LOG_LEVELS,
    SECTIONS,
    Config,
    ConfigValidationError,
    ConfigValidationIssue,
    FieldSpec,
    default_config,
    validate_config,
)

__all__ = [
    "Config",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "FIELDS",
    "FieldSpec",
    "LOG_LEVELS",
    "SECTIONS",
    "default_config",
    "env_var_name",
    "load_config",
    "validate_config",
]
