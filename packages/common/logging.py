"""JSON logging utilities for the assessment service.

Provides:
- `set_request_id` to store a per-request correlation id in a ContextVar
- `JSONFormatter` to render logs as single-line JSON (request_id and attempt context
  passed through `extra=`)
- `configure_logging` to set up stdout logging with the JSON formatter
"""

import logging, sys, json, time
from contextvars import ContextVar

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

# keys copied from `logger.info(..., extra={...})` into the JSON line
CONTEXT_KEYS = ("attempt_id", "assessment_id", "student_id", "question_id", "actor_id", "status")


def set_request_id(rid: str | None) -> None:
    """Set/clear the correlation request id used in log records.

    Args:
        rid: The request id to store; pass None to clear it.
    """
    _request_id.set(rid)


def get_request_id() -> str | None:
    return _request_id.get()


class JSONFormatter(logging.Formatter):
    """Format log records as compact JSON with timestamp and optional context."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize a `logging.LogRecord` to a JSON string.

        Includes: level, epoch timestamp (seconds, 3dp), logger name, message,
        optional `request_id`, any of `CONTEXT_KEYS` given via `extra`, and
        exception info when present.
        """
        base = {
            "level": record.levelname,
            "ts": round(time.time(), 3),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = _request_id.get()
        if rid:
            base["request_id"] = rid
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                base[key] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def configure_logging(level: int | str = "INFO", json_logs: bool = True) -> logging.Logger:
    """Configure root logging to stdout.

    Args:
        level: Logging level as int or string (e.g., logging.INFO or "INFO").
        json_logs: Use `JSONFormatter`; otherwise a human-readable line format.

    Returns:
        A logger instance named "assessment".
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JSONFormatter()
        if json_logs
        else logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)
    return logging.getLogger("assessment")
