"""Logging Setup.

One-call configuration for structured logging. JSON output for
deployments, colored console output for local runs.
"""

import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import get_context_dict


# Identifiers that may arrive through ``extra=`` instead of OperationContext.
EXTRA_FIELDS = ("case_id", "notification_id", "recipient_id", "channel", "worker_id")


def _identifiers(record: logging.LogRecord) -> dict:
    ids = {name: getattr(record, name) for name in EXTRA_FIELDS if getattr(record, name, None)}
    ids.update(get_context_dict())
    return ids


class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    Operation identifiers (request, user, school, case) are merged in so a
    case can be followed across dispatch workers and the escalation sweep.
    """

    def __init__(self, service_name: str = "guardian-notify", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if self.include_caller:
            entry.update(module=record.module, function=record.funcName, line=record.lineno)
        entry.update(_identifiers(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line console output for local runs, colored on a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: Optional[bool] = None):
        super().__init__()
        self.use_color = sys.stdout.isatty() if use_color is None else use_color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        level = "%-8s" % record.levelname
        if self.use_color:
            level = self.COLORS.get(record.levelname, "") + level + self.RESET

        line = "%s %s %s: %s" % (stamp, level, record.name, record.getMessage())
        ids = _identifiers(record)
        if ids:
            line += " [%s]" % ", ".join("%s=%s" % item for item in ids.items())
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def resolve_config(config: Optional[LoggingConfig] = None) -> LoggingConfig:
    """Apply GNOTIFY_LOG_LEVEL and GNOTIFY_LOG_FORMAT overrides."""
    config = config or DEFAULT_LOGGING_CONFIG

    env_level = os.environ.get("GNOTIFY_LOG_LEVEL", "").upper()
    if env_level and env_level in LogLevel.__members__:
        config = replace(config, level=LogLevel(env_level))

    env_format = os.environ.get("GNOTIFY_LOG_FORMAT", "").lower()
    if env_format and env_format in [f.value for f in LogFormat]:
        config = replace(config, format=LogFormat(env_format))

    return config


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure the root logger.

    Call once at startup. Environment variables take precedence over the
    passed configuration.
    """
    config = resolve_config(config)

    if config.format == LogFormat.JSON:
        formatter = StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
        )
    else:
        formatter = ConsoleFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.value))

    for noisy in config.quiet_loggers:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Convenience wrapper around logging.getLogger; output goes through the
    formatter installed by configure_logging().
    """
    return logging.getLogger(name)
