"""
sqlpatch — JSON-lines output for structlog events.

File: src/sqlpatch/observability/logging.py
Last updated: 2026-10-19

Purpose
- Render the events sqlpatch modules emit through ``structlog.get_logger(__name__)``
  as one JSON object per line in ``<log_dir>/sqlpatch.jsonl``.
- Carry database/patch/savepoint correlation onto every event logged in scope.

What should be included in this file
- LoggingSettings, built directly or from the ``[observability]`` config section.
- configure_logging/shutdown_logging around a queue-backed stdlib sink.
- correlation_scope over structlog context variables.

Functional requirements
- Events are rendered on the calling thread, so its correlation is the one recorded.
- Closing the handle writes out every queued line before returning.

Non-functional requirements
- Nothing is configured at import time; until configure_logging runs, structlog
  keeps its defaults.
"""

from __future__ import annotations

import logging
import logging.handlers
import queue
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import structlog

from sqlpatch.constants import DEFAULT_LOG_DIR

LOG_FILENAME: Final[str] = "sqlpatch.jsonl"
ROOT_LOGGER_NAME: Final[str] = "sqlpatch"
CORRELATION_KEYS: Final[frozenset[str]] = frozenset({"database", "patch_id", "savepoint"})

# Runs for structlog events and for plain stdlib records under the root logger.
_SHARED_PROCESSORS: Final[tuple[structlog.typing.Processor, ...]] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
)

_active: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    """Destination and threshold for sqlpatch log output."""

    log_dir: Path = Path(DEFAULT_LOG_DIR)
    level: str = "INFO"
    log_to_stderr: bool = True

    def __post_init__(self) -> None:
        if self.level.upper() not in logging.getLevelNamesMapping():
            raise ValueError(f"unsupported logging level {self.level!r}")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> LoggingSettings:
        """Build settings from the ``[observability]`` section of a loaded config."""

        section = config.get("observability")
        if not isinstance(section, Mapping):
            return cls()
        return cls(
            log_dir=Path(str(section.get("log_dir", DEFAULT_LOG_DIR))),
            level=str(section.get("log_level", "INFO")),
            log_to_stderr=bool(section.get("log_to_stderr", True)),
        )

    @property
    def log_path(self) -> Path:
        return self.log_dir / LOG_FILENAME


class LoggingHandle:
    """An active logging setup, returned by :func:`configure_logging`."""

    def __init__(
        self,
        settings: LoggingSettings,
        *,
        queue_handler: logging.handlers.QueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.settings = settings
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._closed = False

    @property
    def log_path(self) -> Path:
        return self.settings.log_path

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drain the queue, close the sinks and restore structlog defaults."""

        global _active
        if self._closed:
            return
        self._closed = True
        # stop() returns only after the listener has handled every queued record.
        self._listener.stop()
        logging.getLogger(ROOT_LOGGER_NAME).removeHandler(self._queue_handler)
        for sink in self._sinks:
            sink.close()
        structlog.reset_defaults()
        if _active is self:
            _active = None

    def __enter__(self) -> LoggingHandle:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()


def configure_logging(settings: LoggingSettings | None = None) -> LoggingHandle:
    """Send sqlpatch events to ``<log_dir>/sqlpatch.jsonl`` and, optionally, stderr.

    A previously configured handle is closed first.
    """

    global _active
    if _active is not None:
        _active.close()

    resolved = settings if settings is not None else LoggingSettings()
    resolved.log_dir.mkdir(parents=True, exist_ok=True)

    sinks: list[logging.Handler] = [logging.FileHandler(resolved.log_path, encoding="utf-8")]
    if resolved.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setFormatter(logging.Formatter("%(message)s"))

    log_queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    queue_handler = logging.handlers.QueueHandler(log_queue)
    # QueueHandler.prepare() formats before enqueueing, i.e. on the caller's thread.
    queue_handler.setFormatter(_json_formatter())
    listener = logging.handlers.QueueListener(log_queue, *sinks)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolved.level.upper())
    root.propagate = False
    root.addHandler(queue_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    listener.start()

    _active = LoggingHandle(
        resolved,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    return _active


def shutdown_logging() -> None:
    """Close the active handle, if any."""

    if _active is not None:
        _active.close()


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields onto every event logged inside the block.

    Accepts ``database``, ``patch_id`` and ``savepoint``; ``None`` values are
    left unbound. Previous values are restored on exit.
    """

    unknown = sorted(set(fields) - CORRELATION_KEYS)
    if unknown:
        raise ValueError(f"unknown correlation fields: {', '.join(unknown)}")
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, object]:
    """Return the correlation fields bound in the current context."""

    context = structlog.contextvars.get_contextvars()
    return {key: value for key, value in context.items() if key in CORRELATION_KEYS}


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=list(_SHARED_PROCESSORS),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


__all__ = [
    "CORRELATION_KEYS",
    "LOG_FILENAME",
    "LoggingHandle",
    "LoggingSettings",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "shutdown_logging",
]
