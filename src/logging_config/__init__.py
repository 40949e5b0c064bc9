"""Structured Logging & Operation Tracing.

JSON or console log output with request, user, school and case
identifiers bound per operation.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import OperationContext, generate_request_id, get_context_dict
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "configure_logging",
    "generate_request_id",
    "get_context_dict",
    "get_logger",
]
