"""Prometheus metrics module for logmask."""

from logmask.metrics.collectors import (
    PATTERN_BUILD_DURATION,
    PATTERN_BUILD_FAILURES,
    PATTERN_BUILDS,
    RESOLUTIONS,
    RETAINED_BYTES,
    SECRETS_MASKED,
)

__all__ = [
    "SECRETS_MASKED",
    "RETAINED_BYTES",
    "PATTERN_BUILDS",
    "PATTERN_BUILD_FAILURES",
    "PATTERN_BUILD_DURATION",
    "RESOLUTIONS",
]
