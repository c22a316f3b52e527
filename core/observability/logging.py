"""
Correlated logging for sync runs and queued movements.

Every record carries the correlation fields active where it was created:
tenant and store, the ledger integration, the movement being posted
(with its direction and SKU) and the pull run. Fields are set with
``with_correlation`` and live in a ContextVar, so concurrent pulls in
the scheduler never see each other's ids.

    logger = get_logger(__name__)

    with with_correlation(store_id=store.id, stage="pull"):
        logger.info("Starting pull", extra_fields={"warehouse_id": "WH-1"})
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Union


@dataclass(frozen=True)
class CorrelationContext:
    tenant_id: Optional[str] = None
    store_id: Optional[str] = None
    integration_id: Optional[str] = None
    movement_id: Optional[str] = None
    direction: Optional[str] = None
    sku: Optional[str] = None
    sync_log_id: Optional[str] = None
    run_id: Optional[str] = None
    # pull, push, webhook or scheduler
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set fields only."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Copy with the given non-None fields overridden."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


_EMPTY = CorrelationContext()
_current: ContextVar[CorrelationContext] = ContextVar("sync_correlation", default=_EMPTY)


def get_correlation_context() -> CorrelationContext:
    return _current.get()


def set_correlation_context(ctx: CorrelationContext) -> None:
    _current.set(ctx)


@contextmanager
def with_correlation(**kwargs) -> Iterator[CorrelationContext]:
    """Layer correlation fields over the current ones for the duration of the block."""
    token = _current.set(_current.get().merge(**kwargs))
    try:
        yield _current.get()
    finally:
        _current.reset(token)


def _record_context(record: logging.LogRecord) -> CorrelationContext:
    # Records built by CorrelatedLogger carry the context they were created in;
    # hand-built records fall back to whatever is active while formatting.
    return getattr(record, "correlation", None) or get_correlation_context()


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, correlation ids, extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_context(record).to_dict())
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    2024-01-09 12:00:00 [INFO ] push.service [store-1/mov:3f2a9c01/debit/sku:ABC]: Posted
    """

    def _correlation(self, ctx: CorrelationContext) -> str:
        parts = []
        if ctx.store_id:
            parts.append(ctx.store_id)
        if ctx.movement_id:
            parts.append(f"mov:{ctx.movement_id[:8]}")
        if ctx.direction:
            parts.append(ctx.direction)
        if ctx.sku:
            parts.append(f"sku:{ctx.sku}")
        return "/".join(parts) or "-"

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        line = (
            f"{when} [{record.levelname:5}] {record.name} "
            f"[{self._correlation(_record_context(record))}]: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Logger wrapper
# =============================================================================

class CorrelatedLogger:
    """Thin wrapper over logging.Logger.

    Accepts ``extra_fields={...}`` on every call and snapshots the active
    correlation context onto the record.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, args, extra_fields=None, exc_info=False, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {"extra_fields": extra_fields or {}, "correlation": get_correlation_context()}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra, stacklevel=3, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.ERROR, msg, args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, args, **kwargs)

    def setLevel(self, level) -> None:
        self._logger.setLevel(level)

    def isEnabledFor(self, level) -> bool:
        return self._logger.isEnabledFor(level)


# =============================================================================
# Setup
# =============================================================================

class _StdoutHandler(logging.StreamHandler):
    """Writes to whatever sys.stdout is when a record is emitted."""

    def __init__(self):
        super().__init__(sys.stdout)

    @property
    def stream(self):
        return sys.stdout

    @stream.setter
    def stream(self, value):
        pass


SYNC_LOGGERS = ("api", "connectors", "core", "locks", "push", "reconciliation", "storage", "workers")
NOISY_LOGGERS = ("aiohttp.access", "httpx", "uvicorn.access")

_loggers: Dict[str, CorrelatedLogger] = {}
_handler: Optional[logging.Handler] = None


def configure_logging(level: Union[int, str] = logging.INFO, json_format: bool = False) -> None:
    """Install one stdout handler on the root logger.

    Calling again replaces the handler, so the CLI can switch to JSON
    output after modules have already fetched their loggers.
    """
    global _handler

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)

    _handler = _StdoutHandler()
    _handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    root.addHandler(_handler)
    root.setLevel(level)

    for name in SYNC_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> CorrelatedLogger:
    if _handler is None:
        configure_logging()
    if name not in _loggers:
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]


def log_sync_event(event: str, **fields_) -> None:
    """Lifecycle event (batch finished, scheduler tick) with its counters as extra fields."""
    get_logger("workers").info(event, extra_fields=fields_)
