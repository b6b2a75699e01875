"""Logging setup for processes embedding the chat engine."""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["BearerTokenFilter", "setup_logging", "get_logger", "get_log_path"]

LOG_FILE_NAME = "spacechat.log"
LOG_DIR_ENV = "SPACECHAT_LOG_DIR"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".spacechat" / "logs"
_THIRD_PARTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
# Loggers raised to DEBUG when turn tracing is requested.
_TURN_LOGGERS: tuple[str, ...] = ("spacechat.ai.stream", "spacechat.chat.controller", "spacechat.chat.tool_runner")
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")

_CONFIGURED = False
_LOG_PATH: Path | None = None


class BearerTokenFilter(logging.Filter):
    """Masks bearer credentials that end up in formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _BEARER_PATTERN.sub(r"\1***", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    trace_turns: bool = False,
    force: bool = False,
) -> Path:
    """Install a rotating ``spacechat.log`` handler (plus console) on the root logger.

    Calling it again is a no-op returning the existing path unless ``force`` is
    set. ``trace_turns`` lowers the stream, controller and tool-runner loggers
    to DEBUG regardless of ``level``.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    log_path = _resolve_log_dir(log_dir) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    redactor = BearerTokenFilter()
    for handler in handlers:
        handler.setLevel(logging.DEBUG if trace_turns else level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_third_party(level)
    if trace_turns:
        for name in _TURN_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()


def _quiet_third_party(root_level: int) -> None:
    level = max(root_level, logging.WARNING)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(level)
