# chatpush/infra/logging_config.py
"""
Root logging setup: JSON lines in production, coloured console otherwise.

Context such as ``message_id`` or ``job_id`` travels as ``extra`` record
attributes; LogContext attaches it to every call of a unit of work.
"""
import json
import logging
import sys
from datetime import datetime, timezone

# (record attribute, console label, console width); None keeps the full value
_CONTEXT_FIELDS = (
    ("message_id", "msg", None),
    ("community_id", "community", None),
    ("job_id", "job", 8),
    ("request_id", "req", 8),
    ("caller", "caller", None),
)

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "google.auth": logging.WARNING,
}


def _record_context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name, _, _ in _CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **_record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        tags = [
            f"{label}={str(getattr(record, name))[:width]}"
            for name, label, width in _CONTEXT_FIELDS
            if hasattr(record, name)
        ]
        context = f" [{' '.join(tags)}]" if tags else ""

        line = f"{color}[{timestamp}] {record.levelname:8}{self.RESET} {record.name}{context} - {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """Replace root handlers with a single stdout handler at ``level``."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """
    Logger bound to a unit of work; None-valued fields are dropped.

        log = LogContext(logger, message_id=message_id)
        log.info("Processing")   # record.message_id == message_id
    """

    def __init__(self, logger: logging.Logger, **context):
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs


def mask_token(token: str | None, visible: int = 20) -> str:
    """Shorten a device token for logging.

    Example: ``mask_token("fGh...long...")`` → ``"fGh12345678901234567..."``
    """
    if not token:
        return "***"
    if len(token) <= visible:
        return token
    return f"{token[:visible]}..."
