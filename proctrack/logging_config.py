"""
Logging configuration for the case tracker.

create_app() calls setup_logging(app) once. LOG_JSON switches the console handler to one
JSON object per line (log shippers); otherwise a short human-readable format is used.
"""

from __future__ import annotations

import json
import logging

from .utils import utcnow

# Extra attributes copied into JSON lines when a log call passes them via `extra=`.
EXTRA_FIELDS = ("case_id", "action", "actor_id", "record_type", "route", "reminder_id")


class JSONFormatter(logging.Formatter):
    """Structured JSON log lines for machine parsing."""

    def format(self, record):
        entry = {
            "ts": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S")


def setup_logging(app) -> None:
    """
    Configure the `proctrack` logger tree from app config.

    Only the package loggers are touched; the root logger and Flask's own handler are
    left alone so test runners can still capture records.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    package_logger = logging.getLogger("proctrack")
    package_logger.setLevel(level)

    # Re-running the factory (tests) must not stack handlers.
    for handler in list(package_logger.handlers):
        if getattr(handler, "_proctrack", False):
            package_logger.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if app.config.get("LOG_JSON") else HumanFormatter())
    console._proctrack = True
    package_logger.addHandler(console)

    for name in ("urllib3", "werkzeug"):
        logging.getLogger(name).setLevel(logging.WARNING)

    package_logger.debug("Logging initialized at %s", level_name)
