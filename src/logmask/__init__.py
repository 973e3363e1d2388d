"""
logmask: keep credentials out of build logs

Streaming secret masking for console output produced on any node of a
distributed build system.
"""

__version__ = "0.1.0"

from logmask.core.decorators import DecoratorRegistry, ExecutionContext
from logmask.core.node import ExecutionNode
from logmask.core.patterns import AggregatePattern, PatternBuildError, build_aggregate_pattern
from logmask.core.secrets import bind_secrets
from logmask.core.stream import MaskingStream

__all__ = [
    "AggregatePattern",
    "DecoratorRegistry",
    "ExecutionContext",
    "ExecutionNode",
    "MaskingStream",
    "PatternBuildError",
    "bind_secrets",
    "build_aggregate_pattern",
]
