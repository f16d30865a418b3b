"""
Structured JSON logging for the production kernel.

Every kernel log line is one JSON object: timestamp, level, logger and the
snake_case event name as ``message``, followed by the operation context bound
by ``WorkOrderService`` and the record's ``extra`` fields.

Context binding:
    ``LogContext.bind(work_order_id=..., operation=...)`` scopes fields to a
    block.  The facade binds one correlation id per transaction, so every
    line a service emits inside that call (``batch_created``,
    ``dispatch_rejected``, ``transaction_rolled_back``) can be grouped.

Kernel errors logged with ``exc_info`` are flattened through
``error_payload``: ``exc_code`` plus one ``exc_<attr>`` key per structured
attribute.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO
from uuid import UUID

from production_kernel.exceptions import ProductionKernelError, error_payload

LOGGER_ROOT = "production_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "work_order_id",
    "batch_id",
    "actor_id",
    "operation",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("production_log_context", default=_EMPTY)


class LogContext:
    """Operation-scoped log fields, safe across threads and tasks."""

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """
        Layer ``fields`` over the current context for the duration of a block.

        None values are skipped; everything else is stringified, so model ids
        can be passed as UUIDs.  The previous context is restored on exit,
        including when the block raises.
        """
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"unknown log context field(s): {sorted(unknown)}")
        merged = dict(_context.get())
        merged.update({k: str(v) for k, v in fields.items() if v is not None})
        token = _context.set(MappingProxyType(merged))
        try:
            yield
        finally:
            _context.reset(token)


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                line.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            line.update(self._exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        if isinstance(exc, ProductionKernelError):
            for key, value in error_payload(exc).items():
                if key != "message":
                    fields[f"exc_{key}"] = value
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger for a kernel component, e.g. ``get_logger("services.dispatch")``."""
    return logging.getLogger(f"{LOGGER_ROOT}.{name}")


_install_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Install the JSON handler on the ``production_kernel`` logger.

    Only the first call installs a handler; later calls are no-ops until
    ``reset_logging()``.  ``level`` accepts a level number or name.
    """
    global _installed_handler
    with _install_lock:
        if _installed_handler is not None:
            return
        installed = handler or logging.StreamHandler(stream or sys.stderr)
        installed.setFormatter(StructuredFormatter())
        root = logging.getLogger(LOGGER_ROOT)
        root.setLevel(level.upper() if isinstance(level, str) else level)
        root.propagate = False
        root.addHandler(installed)
        _installed_handler = installed


def reset_logging() -> None:
    """Remove the installed handler. Test helper."""
    global _installed_handler
    with _install_lock:
        root = logging.getLogger(LOGGER_ROOT)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        _installed_handler = None
