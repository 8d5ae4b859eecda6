"""
Structured logging (OpenTelemetry-compliant).

Produces structured log output following the OpenTelemetry Logging Data Model.

Usage::

    from ._logging import scoped_logger

    log = scoped_logger("invoke")

    # Debug message (includes code location automatically)
    log.debug("Invoking native callable", extra={"callable": "Gtk.init"})

Environment::

    GIRBRIDGE_LOG_LEVEL=trace|debug|info|warn|error|fatal|off (default: info)
    GIRBRIDGE_LOG_FORMAT=json|human (default: human if tty, json if piped)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Any

from ._version import __version__

__all__ = ["logger", "setup_logging", "scoped_logger", "JsonFormatter", "HumanFormatter"]

# =============================================================================
# Level Mapping
# =============================================================================

# Map Python levels to OpenTelemetry severity text
_LEVEL_TO_SEVERITY = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

# Map string names to Python levels (case-insensitive)
_NAME_TO_LEVEL = {
    "trace": logging.DEBUG,  # Python doesn't have TRACE, use DEBUG
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "err": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "off": logging.CRITICAL + 10,  # Higher than any level
    "none": logging.CRITICAL + 10,
}

# Levels that include code location
_CODE_LOCATION_LEVELS = {logging.DEBUG, logging.ERROR, logging.CRITICAL}

_KNOWN_SCOPES = ("marshal", "invoke", "ownership", "signal", "repository")

# LogRecord attributes that are not user-supplied extras
_STANDARD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "scope",
        "message",
    }
)


def _infer_scope(logger_name: str) -> str:
    """Infer scope from logger name when not explicitly provided."""
    for scope in _KNOWN_SCOPES:
        if scope in logger_name:
            return scope
    if "plan" in logger_name or "trampoline" in logger_name:
        return "invoke"
    if "typelib" in logger_name:
        return "repository"
    return logger_name.split(".")[-1] if logger_name else "girbridge"


def _strip_path_prefix(filepath: str) -> str:
    """Strip common prefixes from filepath for cleaner log output."""
    for prefix in ("girbridge/", "src/"):
        if prefix in filepath:
            return filepath[filepath.index(prefix) + len(prefix) :]
    return filepath


# =============================================================================
# Formatters
# =============================================================================


class JsonFormatter(logging.Formatter):
    """OpenTelemetry-compliant JSON formatter."""

    def format(self, record: logging.LogRecord) -> str:
        # Timestamp with nanosecond precision (RFC3339)
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        timestamp = dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{int(dt.microsecond * 1000):09d}Z"

        severity = _LEVEL_TO_SEVERITY.get(record.levelno, "INFO")

        attributes: dict[str, Any] = {
            "scope": getattr(record, "scope", None) or _infer_scope(record.name)
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_FIELDS and not key.startswith("_"):
                attributes[key] = value if _is_json_scalar(value) else repr(value)

        if record.levelno in _CODE_LOCATION_LEVELS:
            attributes["code.filepath"] = _strip_path_prefix(record.pathname)
            attributes["code.lineno"] = record.lineno

        if record.exc_info:
            attributes["exception.stacktrace"] = self.formatException(record.exc_info)

        log_record = {
            "timestamp": timestamp,
            "severityText": severity,
            "body": record.getMessage(),
            "attributes": attributes,
            "resource": {
                "service.name": "girbridge",
                "service.version": __version__,
            },
        }

        return json.dumps(log_record, separators=(",", ":"))


def _is_json_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


class HumanFormatter(logging.Formatter):
    """Human-readable formatter for terminal output."""

    # ANSI color codes
    _RESET = "\x1b[0m"
    _DIM = "\x1b[2m"
    _RED = "\x1b[31m"
    _YELLOW = "\x1b[33m"
    _CYAN = "\x1b[36m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self._use_colors = use_colors

    def _paint(self, parts: list[str], color: str, text: str) -> None:
        if self._use_colors and color:
            parts.extend((color, text, self._RESET))
        else:
            parts.append(text)

    def format(self, record: logging.LogRecord) -> str:
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        severity = _LEVEL_TO_SEVERITY.get(record.levelno, "INFO")

        if record.levelno <= logging.DEBUG:
            level_color = self._DIM
        elif record.levelno >= logging.ERROR:
            level_color = self._RED
        elif record.levelno >= logging.WARNING:
            level_color = self._YELLOW
        else:
            level_color = ""

        scope = getattr(record, "scope", None) or _infer_scope(record.name)

        parts = [dt.strftime("%H:%M:%S"), " "]
        self._paint(parts, level_color, f"{severity:<5} ")
        self._paint(parts, self._CYAN, f"[{scope}] ")
        parts.append(record.getMessage())

        # The callable being invoked is the key attribute, shown inline
        callable_name = getattr(record, "callable", None)
        if callable_name:
            parts.append(f" ({callable_name})")

        if record.levelno in _CODE_LOCATION_LEVELS:
            filepath = _strip_path_prefix(record.pathname)
            self._paint(parts, self._DIM, f" [{filepath}:{record.lineno}]")

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return "".join(parts)


# =============================================================================
# Logger Setup
# =============================================================================


def _get_log_level() -> int:
    """Get log level from environment."""
    level_name = os.environ.get("GIRBRIDGE_LOG_LEVEL", "info")
    return _NAME_TO_LEVEL.get(level_name.lower(), logging.INFO)


def _get_log_format() -> str:
    """Get log format from environment or auto-detect."""
    fmt = os.environ.get("GIRBRIDGE_LOG_FORMAT")
    if fmt:
        return fmt.lower()
    return "human" if sys.stderr.isatty() else "json"


def _create_handler() -> logging.Handler:
    """Create appropriate handler based on format."""
    handler = logging.StreamHandler(sys.stderr)
    if _get_log_format() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(HumanFormatter(use_colors=sys.stderr.isatty()))
    return handler


# Single logger for all of girbridge
logger = logging.getLogger("girbridge")


def _setup_default_handler() -> None:
    """Configure default logging based on environment."""
    # Don't add handler if user already configured logging
    if logger.handlers:
        return

    logger.addHandler(_create_handler())
    logger.setLevel(_get_log_level())


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
) -> None:
    """
    Configure girbridge logging.

    Parameters
    ----------
    level : str or int, default "INFO"
        Log level. Can be "DEBUG", "INFO", "WARNING", "ERROR", "FATAL",
        or a logging constant like ``logging.DEBUG``.

    format : str, optional
        Log format. Either "json" or "human". If not specified,
        uses GIRBRIDGE_LOG_FORMAT env var or auto-detects based on TTY.

    Examples
    --------
    Trace every native call::

        >>> import girbridge
        >>> girbridge.setup_logging("DEBUG", format="human")
    """
    if isinstance(level, str):
        level = _NAME_TO_LEVEL.get(level.lower(), logging.INFO)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if format:
        os.environ["GIRBRIDGE_LOG_FORMAT"] = format

    logger.addHandler(_create_handler())
    logger.setLevel(level)


class _ScopedLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges extra attributes with scope."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra: dict[str, Any] = dict(self.extra) if self.extra else {}
        if "extra" in kwargs:
            extra.update(kwargs["extra"])
        kwargs["extra"] = extra
        return msg, kwargs


def scoped_logger(scope: str) -> logging.LoggerAdapter:
    """
    Create a logger adapter with a fixed scope.

    Parameters
    ----------
    scope : str
        The scope name ("marshal", "invoke", "ownership", "signal", "repository").

    Returns
    -------
    logging.LoggerAdapter
        A logger adapter that automatically adds scope to all messages.
    """
    return _ScopedLoggerAdapter(logger, {"scope": scope})


# Initialize on import
_setup_default_handler()
