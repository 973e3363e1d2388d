"""
Stream Decorator Registry

Extension point through which independent factories contribute filters
around an output sink. Every registered factory is asked, on the node that
owns an execution context, for a decorator for that context; the resulting
decorators are composed around the context's sink in registration order.

Only ExecutionContext values and PatternSuppliers may cross node boundaries.
Decorators and decorated sinks are built by ``DecoratorRegistry.resolve`` on
the node that writes, never shipped from elsewhere.

Example:
    >>> registry = DecoratorRegistry()
    >>> registry.register(MaskingDecoratorFactory())
    >>> context = ExecutionContext(node_id="agent-1", channel="console", scope_id="build-42")
    >>> resolved = registry.resolve(context, node_id="agent-1")
    >>> len(resolved.decorators)
    1
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from logmask.core.secrets import SecretScopeRegistry
from logmask.core.stream import DEFAULT_MASK_TOKEN, MaskingStream
from logmask.core.supplier import PatternSupplier, ScopedPatternSupplier
from logmask.logging.setup import get_logger
from logmask.metrics.collectors import RESOLUTIONS

logger = get_logger(__name__)


class ResolutionError(RuntimeError):
    """A decorator factory could not be resolved for a context on this node.

    Output for the context must not proceed unmasked after this error.
    """


@dataclass(frozen=True)
class ExecutionContext:
    """Identifies one output channel on one node.

    Attributes:
        node_id: Node that owns the channel and must resolve its decorators.
        channel: Logical log channel name on that node.
        scope_id: Secret scope whose secrets are masked in this channel.
    """

    node_id: str
    channel: str
    scope_id: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.node_id, self.channel)

    def __str__(self) -> str:
        return f"{self.node_id}/{self.channel}"


@runtime_checkable
class StreamDecorator(Protocol):
    """Wraps a sink with additional output behaviour."""

    def decorate(self, sink: Any) -> Any:
        """Return a sink that filters writes before forwarding them to ``sink``."""


@runtime_checkable
class DecoratorFactory(Protocol):
    """Produces a decorator for an execution context."""

    def of(self, context: ExecutionContext) -> Optional[StreamDecorator]:
        """Return a decorator for ``context``, or None to contribute nothing."""


class MaskingDecorator:
    """Decorator wrapping a sink in a MaskingStream bound to one supplier."""

    def __init__(
        self,
        supplier: PatternSupplier,
        *,
        encoding: str = "utf-8",
        mask_token: str = DEFAULT_MASK_TOKEN,
    ) -> None:
        self.supplier = supplier
        self.encoding = encoding
        self.mask_token = mask_token

    def decorate(self, sink: Any) -> MaskingStream:
        return MaskingStream(
            sink,
            self.supplier,
            encoding=self.encoding,
            mask_token=self.mask_token,
        )

    def __repr__(self) -> str:
        return f"MaskingDecorator({self.supplier!r})"


class MaskingDecoratorFactory:
    """Factory masking the secrets of the context's scope.

    Settings are read on the node where ``of`` runs, which is the node
    writing the output.
    """

    def __init__(
        self,
        settings: Optional[Any] = None,
        secrets: Optional[SecretScopeRegistry] = None,
    ) -> None:
        """Initialize the factory.

        Args:
            settings: Optional MaskingSettings. None reads the process
                      settings at resolution time.
            secrets: Secret registry of the node this factory serves. None
                     uses the registry of the process resolving it.
        """
        self._settings = settings
        self._secrets = secrets

    def of(self, context: ExecutionContext) -> MaskingDecorator:
        settings = self._settings
        if settings is None:
            from logmask.config.settings import get_settings

            settings = get_settings()

        supplier = ScopedPatternSupplier(
            context.scope_id,
            encoding=settings.encoding,
            variants=settings.variants,
            max_pattern_bytes=settings.max_pattern_bytes,
            registry=self._secrets,
        )
        # Compile now, so an unbuildable secret set fails the resolution
        supplier.get()
        return MaskingDecorator(
            supplier,
            encoding=settings.encoding,
            mask_token=settings.mask_token,
        )


@dataclass
class ResolvedDecorators:
    """Decorators resolved for one context on one node.

    Attributes:
        context: The context the decorators were resolved for.
        node_id: Node on which resolution ran.
        decorators: Decorators in registration order.
    """

    context: ExecutionContext
    node_id: str
    decorators: list = field(default_factory=list)

    def decorate(self, sink: Any) -> Any:
        """Compose every decorator around ``sink``.

        The first registered decorator wraps the sink directly; the last
        registered one is outermost and sees the producer's bytes first.
        """
        for decorator in self.decorators:
            sink = decorator.decorate(sink)
        return sink

    @property
    def is_passthrough(self) -> bool:
        return not self.decorators


class DecoratorRegistry:
    """Node-local registry of decorator factories.

    Thread Safety:
        Registration and resolution are guarded by a lock; resolution runs
        factories on a copy of the factory list.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._factories: list[DecoratorFactory] = []

    def register(self, factory: DecoratorFactory) -> None:
        """Register a factory. Registering the same instance twice is a no-op."""
        with self._lock:
            if any(f is factory for f in self._factories):
                return
            self._factories.append(factory)

    def unregister(self, factory: DecoratorFactory) -> bool:
        """Remove a factory. Returns True if it was registered."""
        with self._lock:
            for i, f in enumerate(self._factories):
                if f is factory:
                    del self._factories[i]
                    return True
            return False

    def factories(self) -> list[DecoratorFactory]:
        """Return the registered factories in registration order."""
        with self._lock:
            return list(self._factories)

    def resolve(self, context: ExecutionContext, node_id: str) -> ResolvedDecorators:
        """Ask every factory for a decorator for ``context`` on this node.

        Args:
            context: The execution context about to produce output.
            node_id: Identifier of the node performing the resolution.

        Returns:
            ResolvedDecorators for the context.

        Raises:
            ResolutionError: If any factory raises. Partial results are
                             discarded.
        """
        factories = self.factories()
        decorators = []
        for factory in factories:
            try:
                decorator = factory.of(context)
            except Exception as e:
                RESOLUTIONS.labels(outcome="failed").inc()
                logger.error(
                    f"Decorator factory {type(factory).__name__} failed for {context}",
                    extra={
                        "event": "decorator_resolution_failed",
                        "node_id": node_id,
                        "channel": context.channel,
                        "factory": type(factory).__name__,
                    },
                )
                raise ResolutionError(
                    f"Decorator factory {type(factory).__name__} failed for "
                    f"context {context} on node {node_id}: {e}"
                ) from e
            if decorator is not None:
                decorators.append(decorator)

        if not factories:
            RESOLUTIONS.labels(outcome="empty").inc()
            logger.warning(
                f"No decorator factories registered, output of {context} is not filtered",
                extra={"event": "decorator_registry_empty", "node_id": node_id},
            )
        else:
            RESOLUTIONS.labels(outcome="resolved").inc()

        return ResolvedDecorators(context=context, node_id=node_id, decorators=decorators)

    def __len__(self) -> int:
        with self._lock:
            return len(self._factories)

    def __reduce__(self):
        raise TypeError("DecoratorRegistry is node-local and cannot be serialized")


# Global registry for this process (node)
_decorator_registry: Optional[DecoratorRegistry] = None
_decorator_registry_lock = threading.Lock()


def get_decorator_registry() -> DecoratorRegistry:
    """Get this process's decorator registry, with masking registered."""
    global _decorator_registry

    with _decorator_registry_lock:
        if _decorator_registry is None:
            _decorator_registry = DecoratorRegistry()
            _decorator_registry.register(MaskingDecoratorFactory())

    return _decorator_registry


def reset_decorator_registry() -> None:
    """Reset the process decorator registry (for testing)."""
    global _decorator_registry
    with _decorator_registry_lock:
        _decorator_registry = None
