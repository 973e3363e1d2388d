"""Prometheus metrics collectors for logmask.

Defines all library metrics for monitoring and observability. No metric
carries a secret value or a secret-derived label.
"""

from prometheus_client import Counter, Histogram

# Masking metrics
SECRETS_MASKED = Counter(
    "logmask_secrets_masked_total",
    "Total secret occurrences replaced by the mask token",
)

RETAINED_BYTES = Histogram(
    "logmask_retained_bytes",
    "Bytes held back in the retention buffer after a write",
    buckets=[0, 8, 32, 128, 512, 2048, 8192],
)

# Aggregate pattern metrics
PATTERN_BUILDS = Counter(
    "logmask_pattern_builds_total",
    "Aggregate secret patterns compiled",
)

PATTERN_BUILD_FAILURES = Counter(
    "logmask_pattern_build_failures_total",
    "Aggregate secret pattern compilations that failed",
)

PATTERN_BUILD_DURATION = Histogram(
    "logmask_pattern_build_duration_seconds",
    "Aggregate pattern compilation latency",
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
)

# Decorator resolution metrics
RESOLUTIONS = Counter(
    "logmask_decorator_resolutions_total",
    "Decorator resolutions performed on this node",
    ["outcome"],
)
