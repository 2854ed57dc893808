"""Process-wide logging setup for the worker, the API and the admin scripts.

Log lines follow `event_name key=value ...`. The JSON formatter lifts the event
name and the key/value pairs into their own fields so they can be queried
without parsing the message again.
"""
import json
import logging
import logging.config
import re
from datetime import datetime, timezone

from ..settings import settings

_configured = False

_PAIR_RE = re.compile(r"(\w+)=(\S+)")

# LogRecord attributes that are not caller-supplied `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_LIBRARY_LOGGERS = ("httpx", "httpcore", "websockets", "sqlalchemy.engine", "uvicorn.access")


def split_event(message: str) -> tuple[str | None, dict[str, str]]:
    """`"backfill_job_retry job_id=a attempt=2"` -> `("backfill_job_retry", {...})`."""
    head, _, rest = message.partition(" ")
    if not head or "=" in head or not head.replace("_", "").isalnum():
        return None, {}
    return head, dict(_PAIR_RE.findall(rest))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        try:
            message = record.getMessage()
        except TypeError:
            message = str(record.msg)
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        event, fields = split_event(message)
        if event:
            entry["event"] = event
        if fields:
            entry["fields"] = fields
        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def log_level(value: str | None, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(value or "").upper())
    return level if isinstance(level, int) else default


def configure_logging() -> None:
    global _configured
    if _configured:
        return

    level = log_level(settings.LOG_LEVEL)
    if settings.ENV.lower() == "prod":
        level = max(level, logging.INFO)
    # third-party chatter stays at WARNING unless we are debugging
    library_level = logging.DEBUG if level <= logging.DEBUG else max(level, logging.WARNING)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonFormatter},
                "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
            },
            "handlers": {
                "stream": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if settings.LOG_JSON else "plain",
                },
            },
            "root": {"level": level, "handlers": ["stream"]},
            "loggers": {name: {"level": library_level} for name in _LIBRARY_LOGGERS},
        }
    )
    _configured = True
