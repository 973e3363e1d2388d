"""
Scope-bound Secret Sets

Holds the secrets that are currently active for a scope (for example, the
credentials bound for the duration of one build step).

Writers mutate a SecretSet under a lock and publish a new immutable
SecretSnapshot by a single reference assignment. Readers take
``snapshot()`` without locking and always see one complete state.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from logmask.logging.setup import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, repr=False)
class SecretSnapshot:
    """An immutable, versioned view of a SecretSet."""

    secrets: frozenset
    version: int = 0

    def __len__(self) -> int:
        return len(self.secrets)

    def __repr__(self) -> str:
        return f"SecretSnapshot(version={self.version}, size={len(self.secrets)})"


class SecretSet:
    """Mutable collection of the secrets active in one scope.

    Each value is reference counted, so two overlapping bindings of the same
    credential keep it active until both have been removed.

    Thread Safety:
        Mutations are serialized by a lock. ``snapshot()`` is lock-free.

    Example:
        >>> secrets = SecretSet("build-42")
        >>> secrets.add("s3cr3t", "")
        >>> secrets.snapshot().secrets
        frozenset({'s3cr3t'})
    """

    def __init__(self, scope_id: str, secrets: Optional[Iterable[str]] = None) -> None:
        """Initialize the secret set.

        Args:
            scope_id: Identifier of the scope the secrets belong to.
            secrets: Optional initial secrets.
        """
        self.scope_id = scope_id
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {s: 1 for s in _clean(scope_id, secrets or ())}
        self._snapshot = SecretSnapshot(frozenset(self._counts))

    def snapshot(self) -> SecretSnapshot:
        """Return the currently published snapshot."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def add(self, *secrets: str) -> None:
        """Add secrets to the scope."""
        cleaned = _clean(self.scope_id, secrets)
        with self._lock:
            for secret in cleaned:
                self._counts[secret] = self._counts.get(secret, 0) + 1
            self._publish_if_changed()

    def remove(self, *secrets: str) -> None:
        """Release one reference to each secret. Unknown values are ignored."""
        with self._lock:
            for secret in set(secrets):
                count = self._counts.get(secret)
                if count is None:
                    continue
                if count <= 1:
                    del self._counts[secret]
                else:
                    self._counts[secret] = count - 1
            self._publish_if_changed()

    def replace(self, secrets: Iterable[str]) -> None:
        """Replace the whole content of the scope, resetting reference counts."""
        cleaned = _clean(self.scope_id, secrets)
        with self._lock:
            self._counts = {s: 1 for s in cleaned}
            self._publish_if_changed()

    def clear(self) -> None:
        """Remove every secret from the scope."""
        self.replace(())

    def _publish_if_changed(self) -> None:
        secrets = frozenset(self._counts)
        if secrets == self._snapshot.secrets:
            return
        self._snapshot = SecretSnapshot(secrets, self._snapshot.version + 1)
        logger.debug(
            "Secret set changed",
            extra={
                "event": "secret_set_published",
                "scope_id": self.scope_id,
                "version": self._snapshot.version,
                "size": len(self._snapshot),
            },
        )

    def __len__(self) -> int:
        return len(self._snapshot)

    def __repr__(self) -> str:
        return f"SecretSet(scope_id={self.scope_id!r}, version={self.version}, size={len(self)})"

    def __reduce__(self):
        raise TypeError("SecretSet cannot be serialized")


def _clean(scope_id: str, secrets: Iterable[Optional[str]]) -> frozenset:
    """Drop empty and None values; an empty secret would match everywhere."""
    kept = set()
    dropped = 0
    for secret in secrets:
        if secret:
            kept.add(secret)
        else:
            dropped += 1
    if dropped:
        logger.debug(
            "Ignored empty secret values",
            extra={"event": "empty_secrets_ignored", "scope_id": scope_id, "count": dropped},
        )
    return frozenset(kept)


class SecretScopeRegistry:
    """Node-local index of SecretSets by scope id."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._scopes: dict[str, SecretSet] = {}

    def get_or_create(self, scope_id: str) -> SecretSet:
        """Return the SecretSet for ``scope_id``, creating an empty one if needed."""
        with self._lock:
            secret_set = self._scopes.get(scope_id)
            if secret_set is None:
                secret_set = SecretSet(scope_id)
                self._scopes[scope_id] = secret_set
            return secret_set

    def get(self, scope_id: str) -> Optional[SecretSet]:
        with self._lock:
            return self._scopes.get(scope_id)

    def drop(self, scope_id: str) -> bool:
        """Forget a scope. Returns True if it existed."""
        with self._lock:
            return self._scopes.pop(scope_id, None) is not None

    def scopes(self) -> list[str]:
        with self._lock:
            return list(self._scopes)

    def __contains__(self, scope_id: str) -> bool:
        with self._lock:
            return scope_id in self._scopes

    def __reduce__(self):
        raise TypeError("SecretScopeRegistry is node-local and cannot be serialized")


@contextmanager
def bind_secrets(
    scope_id: str,
    secrets: Iterable[str],
    registry: Optional[SecretScopeRegistry] = None,
) -> Iterator[SecretSet]:
    """Make ``secrets`` active in ``scope_id`` for the duration of the block.

    Example:
        >>> with bind_secrets("build-42", ["s3cr3t"]) as secret_set:
        ...     len(secret_set)
        1
    """
    registry = registry if registry is not None else get_secret_registry()
    values = [v for v in secrets if v]
    secret_set = registry.get_or_create(scope_id)
    secret_set.add(*values)
    try:
        yield secret_set
    finally:
        secret_set.remove(*values)


# Global registry for this process (node)
_secret_registry: Optional[SecretScopeRegistry] = None
_secret_registry_lock = threading.Lock()


def get_secret_registry() -> SecretScopeRegistry:
    """Get the secret scope registry of this process."""
    global _secret_registry

    with _secret_registry_lock:
        if _secret_registry is None:
            _secret_registry = SecretScopeRegistry()

    return _secret_registry


def reset_secret_registry() -> None:
    """Reset the process secret registry (for testing)."""
    global _secret_registry
    with _secret_registry_lock:
        _secret_registry = None
