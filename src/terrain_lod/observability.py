from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Final, Iterator, Optional

_frame_id_ctx: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar(
    "frame_id", default=None
)


def get_frame_id() -> Optional[int]:
    return _frame_id_ctx.get()


@contextmanager
def frame_context(frame_id: int) -> Iterator[int]:
    """Tag every record logged inside the block with ``frame_id``."""

    token = _frame_id_ctx.set(int(frame_id))
    try:
        yield frame_id
    finally:
        _frame_id_ctx.reset(token)


_STANDARD_RECORD_ATTRS: Final[set[str]] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
    "frame_id",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        frame_id = getattr(record, "frame_id", None)
        if frame_id is None:
            frame_id = get_frame_id()
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        if timestamp.endswith("+00:00"):
            timestamp = timestamp[:-6] + "Z"

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_ATTRS:
                continue
            extra[key] = value

        if record.exc_info:
            extra["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            extra["stack"] = self.formatStack(record.stack_info)

        payload = {
            "timestamp": timestamp,
            "level": record.levelname.lower(),
            "logger": record.name,
            "frame_id": frame_id,
            "message": record.getMessage(),
            "extra": extra,
        }
        return json.dumps(payload, ensure_ascii=False, default=str)


_LOGGING_CONFIGURED = False
_ORIGINAL_LOG_RECORD_FACTORY = logging.getLogRecordFactory()


def _log_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _ORIGINAL_LOG_RECORD_FACTORY(*args, **kwargs)
    record.frame_id = get_frame_id()
    return record


def configure_logging(*, debug: bool = False, log_level: Optional[str] = None) -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    level = (log_level or ("DEBUG" if debug else "INFO")).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    logging.setLogRecordFactory(_log_record_factory)

    # request-level chatter from the HTTP client
    for logger_name in ("httpx", "httpcore"):
        logging.getLogger(logger_name).setLevel(max(logging.getLevelName(level), logging.WARNING))

    _LOGGING_CONFIGURED = True
