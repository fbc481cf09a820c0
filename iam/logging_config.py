"""
Structured logging for the identity core.

Modules log through logging.getLogger(__name__). configure_logging() is
called once by the host at startup and attaches the same handlers to the
package loggers (iam, core, config).

Auth-relevant context travels as `extra=` fields (user_id, event,
error_id) and is copied into the JSON line when present.
"""

import json
import logging
from logging.handlers import RotatingFileHandler

from core.timestamps import isonow

PACKAGE_LOGGERS = ("iam", "core", "config")

# Optional LogRecord attributes copied into JSON output
EXTRA_FIELDS = (
    "user_id",
    "event",
    "error_id",
    "request_id",
    "remote_addr",
    "endpoint",
    "method",
    "status_code",
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        entry = {
            "timestamp": isonow().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (name, getattr(record, name)) for name in EXTRA_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _build_handlers(settings) -> list[logging.Handler]:
    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG)
    if settings.log_format == "json":
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(TEXT_FORMAT))
    handlers: list[logging.Handler] = [console]

    # Files are always JSON so they can be shipped as-is
    if settings.log_file:
        rotating = RotatingFileHandler(
            settings.log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
        )
        rotating.setLevel(logging.DEBUG)
        rotating.setFormatter(JSONFormatter())
        handlers.append(rotating)
    return handlers


def configure_logging(app=None, settings=None) -> logging.Logger:
    """Apply LOG_LEVEL, LOG_FORMAT and LOG_FILE to the package loggers.

    Args:
        app: Optional Flask app whose logger gets the same handlers.
        settings: AppSettings (defaults to get_settings()).

    Returns:
        The 'iam' logger.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handlers = _build_handlers(settings)

    for name in PACKAGE_LOGGERS:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
        package_logger.handlers = list(handlers)
        package_logger.propagate = False

    if app is not None:
        app.logger.handlers = list(handlers)
        app.logger.setLevel(level)

    return logging.getLogger("iam")
