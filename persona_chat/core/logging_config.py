"""
Logging setup for the chat session runtime.

Console records are human readable with colored levels and the session tag;
file records are one JSON object per line. Structured context travels in
``extra={"extra_fields": {...}}`` and is merged into JSON records.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Third-party loggers that duplicate what the transport hooks already log
QUIET_LOGGERS = ("httpx", "httpcore")

SENSITIVE_KEYS = ("password", "token", "secret", "authorization", "api_key", "api-key", "cookie")
MASK = "***FILTERED***"

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level name, session tag when the record has one."""

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers see the plain record
        record = logging.makeLogRecord(record.__dict__)
        color = LEVEL_COLORS.get(record.levelname, RESET)
        record.levelname = f"{color}{record.levelname:8s}{RESET}"

        session_id = getattr(record, "extra_fields", {}).get("session_id")
        if session_id:
            record.msg = f"[{session_id}] {record.msg}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra_fields`` merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "location": f"{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "extra_fields", {}))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(config: Any, level: int) -> logging.Handler:
    path = Path(config.log_file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        filename=path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(level)
    if config.log_json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(config: Any) -> None:
    """
    Configure the root logger from settings.

    Replaces existing root handlers, so calling it again reconfigures.

    Args:
        config: Settings object with the ``log_*`` fields
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    if config.log_console_enabled:
        root.addHandler(_console_handler(level))
    if config.log_file_enabled:
        root.addHandler(_file_handler(config, level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        f"Logging initialized: level={config.log_level.upper()}, "
        f"console={config.log_console_enabled}, "
        f"file={config.log_file_enabled}"
    )


class SessionLoggerAdapter(logging.LoggerAdapter):
    """
    Adds the current session id to every record's ``extra_fields``.

    Usage:
        log = SessionLoggerAdapter(logging.getLogger(__name__))
        log.bind("session-1")
        log.info("Reply completed")  # record carries session_id
    """

    def __init__(self, logger: logging.Logger, session_id: Optional[str] = None):
        super().__init__(logger, {"session_id": session_id})

    @property
    def session_id(self) -> Optional[str]:
        return self.extra["session_id"]

    def bind(self, session_id: Optional[str]) -> None:
        self.extra = {"session_id": session_id}

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.setdefault("extra", {})
        context = {k: v for k, v in self.extra.items() if v is not None}
        extra["extra_fields"] = {**context, **extra.get("extra_fields", {})}
        return msg, kwargs


def mask_sensitive(data: Any, sensitive_keys: Iterable[str] = SENSITIVE_KEYS) -> Any:
    """
    Replace credential-looking values before they reach a log.

    Keys match case-insensitively on substrings, so ``X-Api-Key`` and
    ``Authorization`` are both masked. Lists and nested dicts are walked.
    """
    keys = tuple(sensitive_keys)
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            lowered = str(key).lower()
            masked[key] = MASK if any(k in lowered for k in keys) else mask_sensitive(value, keys)
        return masked
    if isinstance(data, list):
        return [mask_sensitive(item, keys) for item in data]
    return data


def truncate_for_log(text: str, max_length: int = 5000) -> str:
    """Cut long payloads, noting the original length."""
    if len(text) > max_length:
        return f"{text[:max_length]}... (truncated, total length: {len(text)})"
    return text
