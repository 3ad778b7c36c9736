"""
Logging infrastructure for MCP Compose.

One process-wide manager configures the root logger once: a Rich console
handler on stderr, an optional rotating file handler, and JSON output for
containerised deployments where logs are shipped elsewhere.
"""

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

_RESERVED_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "taskName",
    "processName", "process", "getMessage", "exc_info",
    "exc_text", "stack_info",
}

HTTP_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "aiohttp.client", "urllib3", "h11")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, merging any ``extra`` fields."""
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for plain console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class ComposeLogger:
    """Logging manager shared by the CLI, proxy and dashboard processes."""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._setup_done = False

    def setup_logging(
        self,
        level: Union[str, int] = logging.INFO,
        console_level: Optional[Union[str, int]] = None,
        log_file: Optional[Path] = None,
        format_type: str = "text",
        enable_rich: bool = True,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        suppress_http: bool = True,
        force: bool = False,
        **kwargs: Any,
    ) -> None:
        """
        Configure the root logger.

        Args:
            level: File (and default console) logging level
            console_level: Console logging level, defaults to ``level``
            log_file: Path to a rotating log file (optional)
            format_type: ``text`` or ``json``
            enable_rich: Use Rich for console output
            max_bytes: Maximum log file size before rotation
            backup_count: Number of rotated files to keep
            suppress_http: Quiet the HTTP client libraries
            force: Reconfigure even if logging was already set up
        """
        if self._setup_done and not force:
            return

        if isinstance(level, str):
            level = getattr(logging, level.upper())
        if console_level is None:
            console_level = level
        elif isinstance(console_level, str):
            console_level = getattr(logging, console_level.upper())

        root_logger = logging.getLogger()
        root_logger.setLevel(min(level, console_level))
        root_logger.handlers.clear()

        if enable_rich and format_type != "json":
            console_handler = RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                markup=False,
                show_path=False,
            )
        else:
            console_handler = logging.StreamHandler(sys.stderr)
            if format_type == "json":
                console_handler.setFormatter(JSONFormatter())
            else:
                console_handler.setFormatter(ColoredFormatter(
                    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
                ))

        console_handler.setLevel(console_level)
        root_logger.addHandler(console_handler)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )

            if format_type == "json":
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(
                    "%(asctime)s | %(levelname)s | %(name)s | "
                    "%(module)s:%(funcName)s:%(lineno)d | %(message)s"
                ))

            file_handler.setLevel(level)
            root_logger.addHandler(file_handler)

        if suppress_http:
            for logger_name in HTTP_LOGGERS:
                logging.getLogger(logger_name).setLevel(logging.WARNING)

        self._setup_done = True

    def get_logger(self, name: str) -> logging.Logger:
        """Get or create a named logger."""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


_logger_manager = ComposeLogger()

setup_logging = _logger_manager.setup_logging
get_logger = _logger_manager.get_logger
