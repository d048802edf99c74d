"""Structured logging setup with JSON-lines output and redaction support.

Library modules log through ``structlog.get_logger(__name__)``. ``setup_logging``
routes those events into the stdlib ``spec_compliance`` logger, whose only handler
puts records on a bounded queue; a ``QueueListener`` thread writes them to
``<log_dir>/<run_id>/compliance.jsonl`` (and stderr when asked), so producers
never block on file IO.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

_REDACTED: Final[str] = "***REDACTED***"
_CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "module")

_SECRET_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|password|passphrase|api_?key|authorization|credential|cookie"
    r"|private_key|webhook_url"
)
_STRING_SCRUBBERS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
            r"\s*([:=])\s*([^\s,;]+)"
        ),
        rf"\1\2{_REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {_REDACTED}"),
    (re.compile(r"(?i)\b(https?://)[^\s/@:]+:[^\s/@]+@"), rf"\1{_REDACTED}@"),
)

# Attributes every LogRecord carries; anything else arrived as an extra.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "spec_compliance_correlation", default={}
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    run_id: str
    base_log_dir: Path | str = Path(".compliance/logs")
    logger_name: str = "spec_compliance"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "compliance.jsonl"
    log_to_console: bool = False
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_console: bool | None = None,
    level: int | str | None = None,
) -> StructuredLoggingHandle:
    """Configure structured logging from the ``[observability]`` config section.

    Keyword arguments override the matching section keys.
    """

    section = dict(observability_config or {})
    if level is None:
        configured_level = section.get("log_level", "INFO")
        level = configured_level if isinstance(configured_level, (int, str)) else "INFO"
    if log_dir is None:
        configured_dir = section.get("log_dir", "logs")
        log_dir = configured_dir if isinstance(configured_dir, (str, Path)) else "logs"
    if log_to_console is None:
        log_to_console = bool(section.get("log_to_console"))

    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=log_dir,
            level=level,
            log_to_console=log_to_console,
            redactor=None if section.get("redact_secrets", True) else _keep,
        )
    )


def configure_structlog() -> None:
    """Route ``structlog`` events into stdlib logging as record extras."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            _lift_reserved_keys,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Enqueue without blocking; a full queue drops the record and counts it."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0
        self._lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Correlation lives in a contextvar of the producing thread.
        bound = {**_CORRELATION.get(), **getattr(record, "correlation", {})}
        if bound:
            record.correlation = bound
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._lock:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        line: dict[str, JSONValue] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": self._text(record.getMessage()),
            "run_id": self._run_id,
        }
        line.update(sorted(getattr(record, "correlation", {}).items()))

        extras = {
            key: _to_json(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info:
            line["exception"] = self._text(self.formatException(record.exc_info))
        if record.stack_info:
            line["stack"] = self._text(record.stack_info)
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _text(self, text: str) -> str:
        redacted = self._redact(text)
        return redacted if isinstance(redacted, str) else json.dumps(redacted, sort_keys=True)


class StructuredLoggingHandle:
    """Runtime handle for an active structured logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self.is_shutdown = False
        self._queue_handler = queue_handler
        self._listener = listener
        self._lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    def shutdown(self) -> None:
        """Drain queued records, then close every sink. Safe to call twice."""
        with self._lock:
            if self.is_shutdown:
                return
            self.is_shutdown = True
            self.logger.removeHandler(self._queue_handler)
            # stop() writes everything still queued before joining the thread.
            self._listener.stop()
            if self.dropped_records:
                notice = logging.LogRecord(
                    self.logger.name,
                    logging.WARNING,
                    __file__,
                    0,
                    "log_records_dropped",
                    None,
                    None,
                )
                notice.dropped = self.dropped_records
                for handler in self._listener.handlers:
                    handler.handle(notice)
            for handler in self._listener.handlers:
                handler.close()
            self._queue_handler.close()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Configure queue-backed structured logging for a single invocation.

    Any previously active setup is shut down first.
    """
    global _ACTIVE

    run_id = _non_blank(config.run_id, "run_id")
    log_filename = _non_blank(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must not include path separators")
    if isinstance(config.queue_size, bool) or config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)
    logger_name = _non_blank(config.logger_name, "logger_name")

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / log_filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLineFormatter(run_id=run_id, redactor=config.redactor or default_log_redactor)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_console:
        # stderr keeps stdout free for rendered reports.
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.addHandler(queue_handler)
    listener.start()
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
    )
    with _ACTIVE_LOCK:
        _ACTIVE = handle
    return handle


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shut down ``handle`` (default: the active one) and flush its sinks."""
    global _ACTIVE

    with _ACTIVE_LOCK:
        target = handle if handle is not None else _ACTIVE
        if target is None:
            return
        if _ACTIVE is target:
            _ACTIVE = None
    target.shutdown()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (``run_id``, ``module``) for records logged in scope.

    A ``None`` value unbinds the field for the duration of the scope.
    """
    bound = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
        else:
            bound[key] = _non_blank(value, f"correlation field {key!r}")
    token = _CORRELATION.set(bound)
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-like keys and scrub credentials out of strings."""
    if isinstance(value, str):
        for pattern, replacement in _STRING_SCRUBBERS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _REDACTED if _SECRET_KEY_PATTERN.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _keep(value: JSONValue) -> JSONValue:
    return value


def _lift_reserved_keys(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    # LogRecord refuses extras that shadow its own attributes ("module", "name", ...).
    correlation = {
        key: event_dict.pop(key).strip()
        for key in _CORRELATION_KEYS
        if isinstance(event_dict.get(key), str) and event_dict[key].strip()
    }
    if correlation:
        event_dict["correlation"] = correlation
    for key in [key for key in event_dict if key in _RECORD_ATTRIBUTES]:
        if key not in {"exc_info", "stack_info", "correlation"}:
            event_dict[f"{key}_"] = event_dict.pop(key)
    return event_dict


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Enum):
        return _to_json(value.value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: json.dumps(item, sort_keys=True))
        return items
    return repr(value)


def _non_blank(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"{label} must not be empty")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


atexit.register(shutdown_logging)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
