"""
Structured logging configuration.

Services attach workflow context through ``extra={...}``; both formatters
know how to surface it:

    HTTP fields      method, path, status, duration_ms, remote_addr, http_request_id
    Workflow fields  request_id, step_id, event_type, actor_id, decision_change

Output format comes from ``LOG_FORMAT`` (``json`` | ``readable``), defaulting
to JSON outside debug/testing. Level comes from ``LOG_LEVEL``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

HTTP_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "http_request_id")
WORKFLOW_FIELDS = ("request_id", "step_id", "event_type", "actor_id", "decision_change")


def _collect(record: logging.LogRecord, fields) -> dict:
    return {k: getattr(record, k) for k in fields if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; workflow and HTTP context nested by group."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        workflow = _collect(record, WORKFLOW_FIELDS)
        if workflow:
            entry["workflow"] = workflow
        http = _collect(record, HTTP_FIELDS)
        if http:
            entry["http"] = http
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = " ".join(f"{k}={v}" for k, v in _collect(record, WORKFLOW_FIELDS).items())
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if context:
            line += f" [{context}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    verbose = app.config.get("DEBUG", False) or is_testing

    level_name = (app.config.get("LOG_LEVEL") or ("DEBUG" if verbose else "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = (app.config.get("LOG_FORMAT") or ("readable" if verbose else "json")).lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    # cleared first so repeated create_app calls do not stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
