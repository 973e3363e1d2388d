"""Core modules for streaming secret masking."""

from logmask.core.decorators import (
    DecoratorFactory,
    DecoratorRegistry,
    ExecutionContext,
    MaskingDecorator,
    MaskingDecoratorFactory,
    ResolutionError,
    ResolvedDecorators,
    StreamDecorator,
    get_decorator_registry,
    reset_decorator_registry,
)
from logmask.core.node import ContextOutput, ExecutionNode, ResolutionProtocolError
from logmask.core.patterns import (
    NOOP_PATTERN,
    AggregatePattern,
    PatternBuildError,
    build_aggregate_pattern,
    stream_encoding,
)
from logmask.core.secrets import (
    SecretScopeRegistry,
    SecretSet,
    SecretSnapshot,
    bind_secrets,
    get_secret_registry,
    reset_secret_registry,
)
from logmask.core.stream import DEFAULT_MASK_TOKEN, MaskingStream
from logmask.core.supplier import PatternSupplier, ScopedPatternSupplier, StaticPatternSupplier
from logmask.core.variants import (
    BashQuotedVariants,
    BatchEscapedVariants,
    DollarEscapedVariants,
    SecretVariantFactory,
    get_variant_factories,
)

__all__ = [
    # Patterns
    "AggregatePattern",
    "NOOP_PATTERN",
    "PatternBuildError",
    "build_aggregate_pattern",
    "stream_encoding",
    # Variants
    "SecretVariantFactory",
    "BashQuotedVariants",
    "DollarEscapedVariants",
    "BatchEscapedVariants",
    "get_variant_factories",
    # Secrets
    "SecretSet",
    "SecretSnapshot",
    "SecretScopeRegistry",
    "bind_secrets",
    "get_secret_registry",
    "reset_secret_registry",
    # Suppliers
    "PatternSupplier",
    "StaticPatternSupplier",
    "ScopedPatternSupplier",
    # Stream
    "DEFAULT_MASK_TOKEN",
    "MaskingStream",
    # Decorators
    "ExecutionContext",
    "StreamDecorator",
    "DecoratorFactory",
    "MaskingDecorator",
    "MaskingDecoratorFactory",
    "DecoratorRegistry",
    "ResolvedDecorators",
    "ResolutionError",
    "get_decorator_registry",
    "reset_decorator_registry",
    # Nodes
    "ExecutionNode",
    "ContextOutput",
    "ResolutionProtocolError",
]
