"""Structured logger with a process-wide registry of named loggers.

Each logger writes one line per record, either as JSON or as ``key=value``
text. Loggers derived with :meth:`Logger.with_fields` or
:meth:`Logger.with_log_type` share their parent's level, output and format.
"""

from __future__ import annotations

import contextvars
import json
import socket
import sys
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, TextIO, Union

LOG_TYPE_LOG = "log"
LOG_TYPE_REQUEST = "request"

FIELD_TIMESTAMP = "time"
FIELD_LEVEL = "level"
FIELD_TYPE = "type"
FIELD_SCOPE = "scope"
FIELD_MESSAGE = "msg"
FIELD_INSTANCE = "instance"
FIELD_VERSION = "ver"
FIELD_APP_ID = "app_id"

#: Version string attached to every record under the ``ver`` field.
runtime_version = "unknown"


class LogLevel(str, Enum):
    """Log levels understood by the logger."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"
    UNDEFINED = "undefined"


_SEVERITY = {
    "panic": 0,
    "fatal": 1,
    "error": 2,
    "warn": 3,
    "warning": 3,
    "info": 4,
    "debug": 5,
    "trace": 6,
}
_LEVEL_NAMES = {1: "fatal", 2: "error", 3: "warning", 4: "info", 5: "debug"}
_FATAL, _ERROR, _WARN, _INFO, _DEBUG = 1, 2, 3, 4, 5

_SAFE_TEXT_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-._/@^+"
)

LevelLike = Union[LogLevel, str]


def to_log_level(level: str) -> LogLevel:
    """Convert a string to a LogLevel, case-insensitively; unknown names give UNDEFINED."""
    try:
        level_value = LogLevel(level.lower())
    except ValueError:
        return LogLevel.UNDEFINED
    return level_value


def _severity(level: LevelLike) -> int:
    key = level.value if isinstance(level, LogLevel) else str(level)
    # Names the backend cannot parse fall back to the most restrictive level.
    return _SEVERITY.get(key.lower(), 0)


def _timestamp() -> str:
    now = datetime.now().astimezone()
    text = now.strftime("%Y-%m-%dT%H:%M:%S")
    if now.microsecond:
        text += "." + f"{now.microsecond:06d}".rstrip("0")
    offset = now.utcoffset()
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    total = abs(total)
    return f"{text}{sign}{total // 3600:02d}:{(total % 3600) // 60:02d}"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_stringify(v) for v in value) + "]"
    return str(value)


def _sprint(args: tuple[Any, ...]) -> str:
    """Join operands, adding a space between two operands when neither is a string."""
    parts: list[str] = []
    previous: Any = None
    for index, arg in enumerate(args):
        if index and not isinstance(arg, str) and not isinstance(previous, str):
            parts.append(" ")
        parts.append(_stringify(arg))
        previous = arg
    return "".join(parts)


def _text_value(value: Any) -> str:
    text = _stringify(value)
    if all(ch in _SAFE_TEXT_CHARS for ch in text):
        return text
    return json.dumps(text, ensure_ascii=False)


class _Core:
    """State shared by a logger and every logger derived from it."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.severity = _SEVERITY["info"]
        self.output: Optional[TextIO] = None
        self.json_output = False

    def write(self, line: str) -> None:
        with self.lock:
            stream = self.output if self.output is not None else sys.stdout
            stream.write(line)
            flush = getattr(stream, "flush", None)
            if flush is not None:
                flush()


class Logger:
    """A named logger that emits structured records."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._core = _Core()
        self._fields: dict[str, Any] = {FIELD_SCOPE: name, FIELD_TYPE: LOG_TYPE_LOG}
        self.enable_json_output(False)

    def _derive(self, extra: Mapping[str, Any]) -> "Logger":
        child = object.__new__(Logger)
        child.name = self.name
        child._core = self._core
        child._fields = {**self._fields, **extra}
        return child

    @property
    def fields(self) -> dict[str, Any]:
        """A copy of the fields attached to every record."""
        return dict(self._fields)

    def enable_json_output(self, enabled: bool) -> None:
        """Switch between JSON and text output, resetting the standard fields."""
        self._fields = {
            FIELD_SCOPE: self._fields.get(FIELD_SCOPE),
            FIELD_TYPE: LOG_TYPE_LOG,
            FIELD_INSTANCE: socket.gethostname(),
            FIELD_VERSION: runtime_version,
        }
        self._core.json_output = bool(enabled)

    def set_app_id(self, app_id: str) -> None:
        """Attach an ``app_id`` field to this logger's records."""
        self._fields = {**self._fields, FIELD_APP_ID: app_id}

    def set_output_level(self, level: LevelLike) -> None:
        """Set the minimum level that is written."""
        self._core.severity = _severity(level)

    def set_output(self, dst: TextIO) -> None:
        """Send records to a text stream."""
        self._core.output = dst

    def is_output_level_enabled(self, level: LevelLike) -> bool:
        """Return True if records at ``level`` are written."""
        return self._core.severity >= _severity(level)

    def with_log_type(self, log_type: str) -> "Logger":
        """Return a logger whose records carry the given ``type`` field."""
        return self._derive({FIELD_TYPE: log_type})

    def with_fields(self, fields: Mapping[str, Any]) -> "Logger":
        """Return a logger whose records carry the added fields."""
        return self._derive(dict(fields))

    def _log(self, severity: int, message: str) -> None:
        if self._core.severity < severity:
            return
        data = {}
        for key, value in self._fields.items():
            if key in (FIELD_TIMESTAMP, FIELD_LEVEL, FIELD_MESSAGE):
                key = "fields." + key
            data[key] = value
        timestamp = _timestamp()
        level_name = _LEVEL_NAMES[severity]
        if self._core.json_output:
            record = dict(data)
            record[FIELD_TIMESTAMP] = timestamp
            record[FIELD_LEVEL] = level_name
            record[FIELD_MESSAGE] = message
            line = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
        else:
            pairs = [
                (FIELD_TIMESTAMP, timestamp),
                (FIELD_LEVEL, level_name),
                (FIELD_MESSAGE, message),
            ]
            pairs.extend(sorted(data.items()))
            line = " ".join(f"{key}={_text_value(value)}" for key, value in pairs)
        self._core.write(line + "\n")

    def info(self, *args: Any) -> None:
        self._log(_INFO, _sprint(args))

    def infof(self, format: str, *args: Any) -> None:
        self._log(_INFO, format % args if args else format)

    def debug(self, *args: Any) -> None:
        self._log(_DEBUG, _sprint(args))

    def debugf(self, format: str, *args: Any) -> None:
        self._log(_DEBUG, format % args if args else format)

    def warn(self, *args: Any) -> None:
        self._log(_WARN, _sprint(args))

    def warnf(self, format: str, *args: Any) -> None:
        self._log(_WARN, format % args if args else format)

    def error(self, *args: Any) -> None:
        self._log(_ERROR, _sprint(args))

    def errorf(self, format: str, *args: Any) -> None:
        self._log(_ERROR, format % args if args else format)

    def fatal(self, *args: Any) -> None:
        """Log at fatal level, then exit with status 1."""
        self._log(_FATAL, _sprint(args))
        raise SystemExit(1)

    def fatalf(self, format: str, *args: Any) -> None:
        """Log at fatal level, then exit with status 1."""
        self._log(_FATAL, format % args if args else format)
        raise SystemExit(1)


class NopLogger:
    """A logger that discards every record.

    Settings are remembered but never affect anything, and records are only
    counted, never written. Derived loggers are the logger itself.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.settings: dict[str, Any] = {}
        self.discarded = 0

    def _remember(self, key: str, value: Any) -> None:
        with self._lock:
            self.settings[key] = value

    def _discard(self) -> None:
        with self._lock:
            self.discarded += 1

    def enable_json_output(self, enabled: bool) -> None:
        self._remember("json_output", bool(enabled))

    def set_app_id(self, app_id: str) -> None:
        self._remember(FIELD_APP_ID, app_id)

    def set_output_level(self, level: LevelLike) -> None:
        self._remember(FIELD_LEVEL, level)

    def set_output(self, dst: TextIO) -> None:
        self._remember("output", dst)

    def is_output_level_enabled(self, level: LevelLike) -> bool:
        # Every level counts as enabled, known or not.
        return _severity(level) >= 0

    def with_log_type(self, log_type: str) -> "NopLogger":
        self._remember(FIELD_TYPE, log_type)
        return self

    def with_fields(self, fields: Mapping[str, Any]) -> "NopLogger":
        self._remember("fields", dict(fields))
        return self

    def info(self, *args: Any) -> None:
        self._discard()

    def infof(self, format: str, *args: Any) -> None:
        self._discard()

    def debug(self, *args: Any) -> None:
        self._discard()

    def debugf(self, format: str, *args: Any) -> None:
        self._discard()

    def warn(self, *args: Any) -> None:
        self._discard()

    def warnf(self, format: str, *args: Any) -> None:
        self._discard()

    def error(self, *args: Any) -> None:
        self._discard()

    def errorf(self, format: str, *args: Any) -> None:
        self._discard()

    def fatal(self, *args: Any) -> None:
        self._discard()

    def fatalf(self, format: str, *args: Any) -> None:
        self._discard()


_loggers: dict[str, Logger] = {}
_loggers_lock = threading.Lock()
_default_nop_logger = NopLogger()
_logger_var: contextvars.ContextVar[Any] = contextvars.ContextVar("svckit_logger")


def new_logger(name: str) -> Logger:
    """Return the registered logger called ``name``, creating it if needed."""
    with _loggers_lock:
        logger = _loggers.get(name)
        if logger is None:
            logger = Logger(name)
            _loggers[name] = logger
        return logger


def get_loggers() -> dict[str, Logger]:
    """Return a snapshot of all registered loggers by name."""
    with _loggers_lock:
        return dict(_loggers)


def new_context(logger: Any) -> contextvars.Context:
    """Return a copy of the current context that carries ``logger``."""
    ctx = contextvars.copy_context()
    ctx.run(_logger_var.set, logger)
    return ctx


def from_context_or_default(ctx: contextvars.Context) -> Union[Logger, NopLogger]:
    """Return the logger carried by ``ctx``, or a logger that discards everything."""
    value = ctx.get(_logger_var)
    if isinstance(value, (Logger, NopLogger)):
        return value
    return _default_nop_logger