"""Logging configuration module for logmask."""

from logmask.logging.setup import (
    SecretMaskingFilter,
    execution_context,
    get_logger,
    setup_logging,
)

__all__ = ["SecretMaskingFilter", "execution_context", "get_logger", "setup_logging"]
