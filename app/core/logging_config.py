"""Root logger setup: text in dev, JSON lines in production."""

from __future__ import annotations

import json
import logging
import os
import sys

from app.core.tenant import get_company_id, get_request_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()


class ContextFilter(logging.Filter):
    """Stamps request_id / company_id from the current context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        record.company_id = get_company_id()
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        body = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "company_id": getattr(record, "company_id", None),
        }
        if record.exc_info:
            body["exc"] = self.formatException(record.exc_info)
        return json.dumps(body, default=str)


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or LOG_LEVEL), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if (fmt or LOG_FORMAT) == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(company_id)s %(request_id)s] %(message)s")
        )
    handler.addFilter(ContextFilter())
    root.addHandler(handler)
