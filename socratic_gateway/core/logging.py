"""Unified logging for the Socratic gateway.

Console output goes through Rich with a coloured icon per level; when
``Settings.log_file`` is set, every entry is also appended to a rotating
JSON Lines file with credentials redacted.

Console Output Example:
    ℹ Calling deepseek (deepseek-chat), max_tokens=1000
    ⚠ Provider deepseek failed: Timeout Error [...], trying fallback
    ✓ Generated response via openai (fallback) in 812 ms

File Output Example (gateway.log):
    {"timestamp": "2026-03-01T10:23:45.123456+00:00", "level": "WARNING", "message": "Provider deepseek failed", "provider": "deepseek", "error_type": "timeout"}

Usage:
    from socratic_gateway.core import Settings, get_logger

    logger = get_logger(Settings(log_level="DEBUG", log_file="gateway.log"))
    logger.info("Selected primary provider", provider="deepseek")
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from rich.console import Console

if TYPE_CHECKING:
    from socratic_gateway.core.config import Settings

# Word boundaries keep "tokens" and "input_tokens" out of the match.
_SENSITIVE_KEY_PATTERN = re.compile(
    r"(api[_-]?key|(?<![a-z])token(?![s])|secret|password|credential|authorization)",
    re.IGNORECASE,
)

_REDACTED = "***REDACTED***"


class LoggerProtocol(Protocol):
    """Minimal logger interface accepted by gateway components.

    Both GatewayLogger and _StdlibLoggerAdapter satisfy it.
    """

    def debug(self, msg: str, **kwargs: Any) -> None: ...

    def info(self, msg: str, **kwargs: Any) -> None: ...

    def success(self, msg: str, **kwargs: Any) -> None: ...

    def warning(self, msg: str, **kwargs: Any) -> None: ...

    def error(self, msg: str, **kwargs: Any) -> None: ...


def _sanitize(data: Any) -> Any:
    """Return a copy of ``data`` with values of sensitive keys redacted."""
    if isinstance(data, dict):
        return {
            key: _REDACTED
            if isinstance(key, str) and _SENSITIVE_KEY_PATTERN.search(key)
            else _sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [_sanitize(item) for item in data]
    return data


class StructuredFileHandler(RotatingFileHandler):
    """Rotating file handler that writes one JSON object per line.

    User fields are merged at the top level unless they collide with a
    reserved key, in which case they are namespaced under ``data``.

    Args:
        filepath: Path to the log file
        max_bytes: Maximum file size before rotation (default: 10MB)
        backup_count: Number of rotated files to keep (default: 3)
    """

    _RESERVED_KEYS: frozenset[str] = frozenset(
        {"timestamp", "level", "message", "logger", "data"}
    )

    def __init__(
        self,
        filepath: Path | str,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 3,
    ) -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            filename=str(filepath),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.name and record.name != "root":
            entry["logger"] = record.name

        conflicting: dict[str, Any] = {}
        for key, value in _sanitize(getattr(record, "extra", {}) or {}).items():
            if key in self._RESERVED_KEYS:
                conflicting[key] = value
            else:
                entry[key] = value
        if conflicting:
            entry["data"] = conflicting

        return json.dumps(_sanitize(entry), default=str)


class GatewayLogger:
    """Logger with Rich console output and optional JSON Lines file output.

    Semantic methods and their console icons:
    - debug(): dim 🔍 (only at DEBUG level)
    - info(): blue ℹ
    - success(): green ✓ (INFO level)
    - warning(): yellow ⚠
    - error(): red ✗

    Console and file share the single threshold ``settings.log_level``.

    Args:
        settings: Object exposing ``log_level`` and ``log_file``
        console: Optional Rich console (tests pass one that records output)
    """

    _LEVEL_MAP = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    def __init__(self, settings: Settings, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

        level_name = getattr(settings, "log_level", "INFO").upper()
        self._level = self._LEVEL_MAP.get(level_name, logging.INFO)

        log_file = getattr(settings, "log_file", None)
        self.file_handler: StructuredFileHandler | None = None
        if log_file:
            self.file_handler = StructuredFileHandler(Path(log_file))
            self.file_handler.setLevel(self._level)

    def _emit(self, level: int, markup: str, msg: str, extra: dict[str, Any]) -> None:
        if level < self._level:
            return
        self.console.print(markup, highlight=False)
        if self.file_handler is None:
            return
        record = logging.LogRecord(
            name="socratic_gateway",
            level=level,
            pathname="",
            lineno=0,
            msg=msg,
            args=(),
            exc_info=None,
        )
        record.extra = extra
        self.file_handler.emit(record)

    def debug(self, msg: str, **extra: Any) -> None:
        self._emit(logging.DEBUG, f"[dim]🔍 {msg}[/dim]", msg, extra)

    def info(self, msg: str, **extra: Any) -> None:
        self._emit(logging.INFO, f"[blue]ℹ[/blue] {msg}", msg, extra)

    def success(self, msg: str, **extra: Any) -> None:
        self._emit(logging.INFO, f"[green]✓[/green] {msg}", msg, extra)

    def warning(self, msg: str, **extra: Any) -> None:
        self._emit(logging.WARNING, f"[yellow]⚠[/yellow] {msg}", msg, extra)

    def error(self, msg: str, **extra: Any) -> None:
        self._emit(logging.ERROR, f"[red]✗[/red] {msg}", msg, extra)

    def close(self) -> None:
        """Close the file handler. Safe to call multiple times."""
        if self.file_handler is not None:
            self.file_handler.close()
            self.file_handler = None


class _StdlibLoggerAdapter:
    """Adapter giving a stdlib logger the ``success`` method and kwargs fields.

    Extra kwargs are nested under ``extra_data`` so they cannot clash with
    LogRecord attributes such as ``module``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @staticmethod
    def _safe_extra(kwargs: dict[str, Any]) -> dict[str, Any] | None:
        return {"extra_data": _sanitize(kwargs)} if kwargs else None

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._logger.debug(msg, extra=self._safe_extra(kwargs))

    def info(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(msg, extra=self._safe_extra(kwargs))

    def success(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(msg, extra=self._safe_extra(kwargs))

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(msg, extra=self._safe_extra(kwargs))

    def error(self, msg: str, **kwargs: Any) -> None:
        self._logger.error(msg, extra=self._safe_extra(kwargs))


def default_logger(name: str) -> LoggerProtocol:
    """Return a stdlib-backed logger for components built without one."""
    return _StdlibLoggerAdapter(logging.getLogger(name))


def get_logger(settings: Settings) -> GatewayLogger:
    """Create a GatewayLogger configured from settings."""
    return GatewayLogger(settings)
