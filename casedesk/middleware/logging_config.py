"""
Structured logging for CaseDesk.

Two output shapes share one set of context keys:
  - JSON lines when DEBUG is off (log shippers, containers)
  - a short colored line in development

Case operations log with ``extra={"case_id", "actor", "role", "action"}``
and request timing adds method/path/status/duration; both formatters pick
those keys up from the record. LOG_LEVEL overrides the level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
CASE_KEYS = ("case_id", "rma_number", "actor", "role", "action")


def record_context(record: logging.LogRecord, keys=REQUEST_KEYS + CASE_KEYS) -> dict:
    """The ``extra`` values present on *record*, in key order."""
    found = {}
    for key in keys:
        value = getattr(record, key, None)
        if value is not None:
            found[key] = value
    return found


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:01:07 INFO     casedesk.services.dtr_lifecycle <DTR-2024-0001 u-mgr>: ...``"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ctx = record_context(record, ("case_id", "rma_number", "actor"))
        tag = f" <{' '.join(str(v) for v in ctx.values())}>" if ctx else ""
        duration = getattr(record, "duration_ms", None)
        timing = f" [{duration:.0f}ms]" if duration is not None else ""
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelname, "")

        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}{tag}: {record.getMessage()}{timing}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*'s environment."""
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    # create_app runs once per test session too; never stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, %s)", level_name, "json" if structured else "readable")
