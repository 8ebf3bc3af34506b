"""Structured logging for Chat Relay.

Console output is colored and human readable. Two rotating JSON files sit
under logs/: app.jsonl gets INFO and above (generation summaries included),
errors.jsonl gets ERROR and above. Every record carries the request context
(request, user, chat and stream ids) when one is active.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import uuid

from pathlib import Path
from typing import Any, cast

from pydantic import ValidationError
from pythonjsonlogger import json as jsonlogger

from api.middleware.request_context import get_request_context
from core.constants import (
    INSTANCE_ID_LENGTH,
    LOG_BACKUP_COUNT_APP,
    LOG_BACKUP_COUNT_ERRORS,
    LOG_MAX_SIZE,
    LOG_PREVIEW_LENGTH,
    PROJECT_ROOT,
    get_settings,
)

#: Applied to content previews before they reach any handler
REDACTION_PATTERNS = [
    (r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b", "[EMAIL]"),
    (r"\b(?:\d{4}[- ]?){3}\d{4}\b", "[CARD]"),
    (r"\b(sk-|pk-|api[-_]?key[-_]?)[A-Za-z0-9]{20,}\b", "[API_KEY]"),
    (r"\b(password|secret|token)\s*[:=]\s*\S+", "[REDACTED]"),
]


class MinLevelFilter(logging.Filter):
    """Drop records below ``level`` regardless of the handler level."""

    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.level


class ColoredConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL] name - message`` with the level colored; access lines get a colored status."""

    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        level_fmt = f"{color}[{record.levelname}]{self.RESET}" if color else f"[{record.levelname}]"
        record.asctime = self.formatTime(record, "%H:%M:%S")

        # uvicorn access args: (client_addr, method, full_path, http_version, status_code)
        if record.name == "uvicorn.access" and record.args and len(record.args) == 5:
            client_addr, method, full_path, http_version, status_code = record.args
            status = int(cast(Any, status_code))
            status_color = self.GREEN if status < 400 else self.YELLOW if status < 500 else self.RED
            message = (
                f'{client_addr} - "\x1b[1m{method}\x1b[0m {full_path} HTTP/{http_version}" '
                f"{status_color}{status_code}{self.RESET}"
            )
            return f"{record.asctime} {level_fmt} {record.name} - {message}"

        formatted = f"{record.asctime} {level_fmt} {record.name} - {record.getMessage()}"
        if record.exc_info:
            formatted = f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


def configure_uvicorn_logging() -> None:
    """Configure uvicorn loggers to use the application console format."""
    formatter = ColoredConsoleFormatter()

    main_logger = logging.getLogger("uvicorn")
    main_logger.handlers = []
    main_logger.setLevel(logging.INFO)

    for name in ("uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        uv_logger.addHandler(handler)
        uv_logger.propagate = False


def _json_file_handler(path: Path, *, level: int, backups: int, fmt: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=LOG_MAX_SIZE, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    handler.addFilter(MinLevelFilter(level))
    handler.setFormatter(jsonlogger.JsonFormatter(fmt, timestamp=True))
    return handler


def setup_logging(name: str = "chat-relay", debug: bool | None = None) -> logging.Logger:
    """Attach the console and JSON file handlers to logger ``name``.

    ``debug`` defaults to the DEBUG environment variable and only changes
    the console level; the files never receive DEBUG records.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    if debug is None:
        debug = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if debug else logging.INFO)
    console.setFormatter(ColoredConsoleFormatter())
    logger.addHandler(console)

    log_dir = PROJECT_ROOT / "logs"
    log_dir.mkdir(exist_ok=True)
    logger.addHandler(
        _json_file_handler(
            log_dir / "app.jsonl",
            level=logging.INFO,
            backups=LOG_BACKUP_COUNT_APP,
            fmt="%(timestamp)s %(levelname)s %(message)s %(request_id)s %(chat_id)s %(stream_id)s",
        )
    )
    logger.addHandler(
        _json_file_handler(
            log_dir / "errors.jsonl",
            level=logging.ERROR,
            backups=LOG_BACKUP_COUNT_ERRORS,
            fmt="%(timestamp)s %(levelname)s %(name)s %(message)s",
        )
    )
    return logger


class ChatLogger:
    """Application logger. Keyword arguments become structured fields on the record."""

    def __init__(self, name: str = "chat-relay"):
        self.logger = setup_logging(name)
        self.instance_id = str(uuid.uuid4())[:INSTANCE_ID_LENGTH]

    def _with_context(self, fields: dict[str, Any]) -> dict[str, Any]:
        fields.setdefault("instance_id", self.instance_id)
        if ctx := get_request_context():
            for key, value in ctx.to_log_context().items():
                fields.setdefault(key, value)
        return fields

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._with_context(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._with_context(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._with_context(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, extra=self._with_context(kwargs), exc_info=exc_info)

    def _should_log_content(self) -> bool:
        try:
            return bool(get_settings().enable_content_logging)
        except ValidationError:
            return False

    def _redact_content(self, text: str) -> str:
        for pattern, replacement in REDACTION_PATTERNS:
            text = re.sub(pattern, replacement, text)
        return text

    def preview(self, text: str) -> str:
        """Redacted, truncated preview of message content, or a placeholder."""
        if not self._should_log_content():
            return "[HIDDEN]"
        snippet = self._redact_content(text[:LOG_PREVIEW_LENGTH].replace("\n", " "))
        return snippet + "..." if len(text) > LOG_PREVIEW_LENGTH else snippet

    def log_generation(
        self,
        chat_id: str,
        stream_id: str,
        model: str,
        user_input: str,
        response: str,
        tool_names: list[str] | None = None,
        duration_ms: float | None = None,
        usage: dict[str, int] | None = None,
    ) -> None:
        """Log a completed generation with content hidden unless explicitly enabled."""
        msg_parts = [f"Generation {stream_id[:8]} ({model}) User: {self.preview(user_input)} → AI: {self.preview(response)}"]

        if tool_names:
            msg_parts.append(f"[{len(tool_names)} tools]")
        if duration_ms is not None:
            msg_parts.append(f"[{duration_ms:.0f}ms]")
        if usage and usage.get("total_tokens"):
            msg_parts.append(f"[{usage['total_tokens']} tokens]")

        extra_data: dict[str, Any] = {
            "generation": True,
            "chat_id": chat_id,
            "stream_id": stream_id,
            "model": model,
            "chars_input": len(user_input),
            "chars_response": len(response),
            "content_logging": self._should_log_content(),
        }
        if tool_names:
            extra_data["tool_names"] = tool_names
        if duration_ms is not None:
            extra_data["ms"] = int(duration_ms)
        if usage:
            extra_data["tokens"] = usage.get("total_tokens", 0)

        self.logger.info(" ".join(msg_parts), extra=self._with_context(extra_data))


logger = ChatLogger()
