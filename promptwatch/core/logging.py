"""Logging setup shared by the API process and Celery workers.

Text output by default; one JSON object per line when LOG_JSON is set.
The dispatcher, the Celery tasks and the request middleware pass
identifiers through ``extra=`` and they show up as top-level JSON keys:

    logger.warning("Job failed", extra={"business_id": 3, "prompt_id": 7, "execution_id": 41})
"""

import json
import logging
import sys
from datetime import datetime, timezone

from promptwatch.core.config import settings

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes copied from LogRecord extras into JSON output
CONTEXT_FIELDS = ("request_id", "business_id", "prompt_id", "platform_id", "execution_id")

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _formatter() -> logging.Formatter:
    if settings.log_json:
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT)


def setup_logging() -> None:
    """Replace root handlers with a single stdout handler at LOG_LEVEL."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    # SQL echo only while debugging
    logging.getLogger("sqlalchemy.engine").setLevel(level if settings.app_debug else logging.WARNING)
    logging.getLogger("celery").setLevel(level)
