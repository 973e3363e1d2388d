"""
Pattern Suppliers

A PatternSupplier always yields the current AggregatePattern for one scope.
MaskingStream asks its supplier on every write, so secrets entering or
leaving the scope take effect on the next chunk.

ScopedPatternSupplier is the piece that travels between nodes: it carries
only a scope id and build options, and resolves the secrets of whichever
process it is used in.
"""

from typing import Iterable, Optional, Protocol, runtime_checkable

from logmask.core.patterns import (
    DEFAULT_MAX_PATTERN_BYTES,
    AggregatePattern,
    build_aggregate_pattern,
)
from logmask.core.secrets import SecretScopeRegistry, SecretSnapshot, get_secret_registry
from logmask.core.variants import KNOWN_VARIANTS, get_variant_factories


@runtime_checkable
class PatternSupplier(Protocol):
    """Yields the current aggregate pattern. Must never block."""

    def get(self) -> AggregatePattern:
        """Return the latest pattern snapshot."""


class StaticPatternSupplier:
    """Supplier bound to one fixed pattern."""

    def __init__(self, pattern: AggregatePattern) -> None:
        self._pattern = pattern

    def get(self) -> AggregatePattern:
        return self._pattern

    def __repr__(self) -> str:
        return f"StaticPatternSupplier({self._pattern!r})"


class ScopedPatternSupplier:
    """Supplier for the secrets currently active in a scope.

    The pattern is rebuilt lazily, only when the scope publishes a new
    snapshot. The cache is a single ``(snapshot, pattern)`` tuple replaced by
    assignment, so concurrent readers never see a torn pair.

    Example:
        >>> registry = SecretScopeRegistry()
        >>> supplier = ScopedPatternSupplier("build-42", registry=registry)
        >>> supplier.get().is_noop
        True
        >>> registry.get_or_create("build-42").add("s3cr3t")
        >>> supplier.get().is_noop
        False
    """

    def __init__(
        self,
        scope_id: str,
        *,
        encoding: str = "utf-8",
        variants: Optional[Iterable[str]] = None,
        max_pattern_bytes: int = DEFAULT_MAX_PATTERN_BYTES,
        registry: Optional[SecretScopeRegistry] = None,
    ) -> None:
        """Initialize the supplier.

        Args:
            scope_id: Scope whose secrets are masked.
            encoding: Output encoding the pattern is built for.
            variants: Variant names (see ``logmask.core.variants``). None
                      selects every known variant.
            max_pattern_bytes: Size limit passed to the pattern builder.
            registry: Secret registry to read from. None resolves the
                      registry of the current process on first use.
        """
        self.scope_id = scope_id
        self.encoding = encoding
        self.variants = tuple(KNOWN_VARIANTS if variants is None else variants)
        self.max_pattern_bytes = max_pattern_bytes
        self._factories = get_variant_factories(self.variants)
        self._registry = registry
        self._cache: Optional[tuple[SecretSnapshot, AggregatePattern]] = None

    def get(self) -> AggregatePattern:
        """Return the pattern for the scope's current snapshot.

        Raises:
            PatternBuildError: If the current secrets cannot be compiled.
        """
        registry = self._registry
        if registry is None:
            registry = self._registry = get_secret_registry()

        snapshot = registry.get_or_create(self.scope_id).snapshot()
        cache = self._cache
        if cache is not None and cache[0] is snapshot:
            return cache[1]

        pattern = build_aggregate_pattern(
            snapshot.secrets,
            encoding=self.encoding,
            variants=self._factories,
            max_pattern_bytes=self.max_pattern_bytes,
        )
        self._cache = (snapshot, pattern)
        return pattern

    def __getstate__(self) -> dict:
        # Only the recipe crosses a node boundary, never secrets or patterns
        return {
            "scope_id": self.scope_id,
            "encoding": self.encoding,
            "variants": self.variants,
            "max_pattern_bytes": self.max_pattern_bytes,
        }

    def __setstate__(self, state: dict) -> None:
        self.__init__(
            state["scope_id"],
            encoding=state["encoding"],
            variants=state["variants"],
            max_pattern_bytes=state["max_pattern_bytes"],
        )

    def __repr__(self) -> str:
        return f"ScopedPatternSupplier(scope_id={self.scope_id!r}, encoding={self.encoding!r})"
