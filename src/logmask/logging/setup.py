"""Logging configuration for logmask.

Provides structured JSON logging on stderr, tagged with the execution
context (``<node_id>/<channel>``) of the output being filtered, so library
events can be traced back to the node and channel that emitted them.

The library's own records never contain secret values. Applications that
log text which may carry secrets can attach a SecretMaskingFilter, which
masks log messages with the same aggregate pattern as the output streams.

Example:
    >>> setup_logging(level="DEBUG", json_format=False)
    >>> with execution_context("agent-1", "console"):
    ...     get_logger("logmask.demo").info("resolving decorators")
"""

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator, Optional

from pythonjsonlogger import jsonlogger


# "<node_id>/<channel>" of the output currently being opened or written
execution_context_var: ContextVar[str] = ContextVar("execution_context", default="")


class ExecutionContextFilter(logging.Filter):
    """Filter that adds execution_context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.execution_context = execution_context_var.get() or "-"
        return True


class SecretMaskingFilter(logging.Filter):
    """Filter that masks active secrets in rendered log messages.

    The message is rendered with its arguments first, so a secret passed as
    a ``%s`` argument is masked as well. The record keeps the masked text as
    ``msg`` and drops ``args``.

    Args:
        supplier: PatternSupplier of the scope whose secrets are masked.
        mask_token: Placeholder for masked secrets.
    """

    def __init__(self, supplier: Any, mask_token: str = "****") -> None:
        super().__init__()
        self.supplier = supplier
        self.mask_token = mask_token

    def filter(self, record: logging.LogRecord) -> bool:
        pattern = self.supplier.get()
        if pattern.is_noop:
            return True

        message = record.getMessage()
        data = message.encode(pattern.encoding, errors="backslashreplace")
        masked, count = pattern.mask(data, self.mask_token.encode(pattern.encoding))
        if count:
            record.msg = masked.decode(pattern.encoding, errors="replace")
            record.args = None
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with level/timestamp renamed and service metadata."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")
        if "asctime" in log_record:
            log_record["timestamp"] = log_record.pop("asctime")

        log_record["service"] = "logmask"

        if hasattr(record, "execution_context"):
            log_record["execution_context"] = record.execution_context


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    mask_filter: Optional[SecretMaskingFilter] = None,
) -> None:
    """Configure logging on stderr.

    Records go to stderr so they never interleave with filtered output that
    an application writes to stdout.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var
               LOGMASK_LOG_LEVEL or INFO.
        json_format: Whether to use JSON format. Defaults to env var
                     LOGMASK_LOG_FORMAT == 'json' or True.
        mask_filter: Optional SecretMaskingFilter attached to the handler.
    """
    if level is None:
        level = os.getenv("LOGMASK_LOG_LEVEL", "INFO").upper()
    if json_format is None:
        json_format = os.getenv("LOGMASK_LOG_FORMAT", "json").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ExecutionContextFilter())
    if mask_filter is not None:
        handler.addFilter(mask_filter)

    if json_format:
        formatter = CustomJsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(execution_context)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name (typically ``__name__``)."""
    return logging.getLogger(name)


def set_execution_context(node_id: str, channel: str) -> Token:
    """Tag subsequent records of the current context with ``node_id/channel``.

    Returns:
        Token for ``execution_context_var.reset``.
    """
    return execution_context_var.set(f"{node_id}/{channel}")


def get_execution_context() -> str:
    """Return the current "<node_id>/<channel>", or an empty string."""
    return execution_context_var.get()


@contextmanager
def execution_context(node_id: str, channel: str) -> Iterator[None]:
    """Tag records emitted inside the block with ``node_id/channel``.

    The previous context is restored on exit, so nothing leaks into the
    caller once an output operation returns.
    """
    token = set_execution_context(node_id, channel)
    try:
        yield
    finally:
        execution_context_var.reset(token)
