"""
Secret Variants

A secret rarely reaches a console log only in its literal form. Shells echo
commands with their own quoting, build tools double ``$`` signs, and batch
files caret-escape metacharacters. Each factory here yields the additional
forms one secret may take once it has passed through such a tool, so the
aggregate pattern masks those too.

Example:
    >>> factories = get_variant_factories(["bash", "dollar"])
    >>> sorted(expand_secret("pa$s", factories))
    ["'pa$s'", 'pa$$s', 'pa$s']
"""

import re
from typing import Iterable, Optional, Protocol, runtime_checkable


@runtime_checkable
class SecretVariantFactory(Protocol):
    """Produces extra literal forms of a secret."""

    name: str

    def variants(self, secret: str) -> Iterable[str]:
        """Return alternative literal forms of ``secret`` (may be empty)."""


class BashQuotedVariants:
    """Forms produced by ``set -x`` tracing in POSIX shells.

    Bash prints a word containing shell metacharacters wrapped in single
    quotes, with every embedded ``'`` rewritten as ``'\\''``.
    """

    name = "bash"

    # Characters bash prints unquoted in xtrace output
    _PLAIN = re.compile(r"^[A-Za-z0-9_@%+=:,./-]*$")

    def variants(self, secret: str) -> Iterable[str]:
        if self._PLAIN.match(secret):
            return []
        escaped = secret.replace("'", "'\\''")
        forms = [f"'{escaped}'"]
        if escaped != secret:
            forms.append(escaped)
        return forms


class DollarEscapedVariants:
    """``$`` doubled, as tools that expand ``$VAR`` escape a literal dollar."""

    name = "dollar"

    def variants(self, secret: str) -> Iterable[str]:
        if "$" not in secret:
            return []
        return [secret.replace("$", "$$")]


class BatchEscapedVariants:
    """Windows batch caret escaping of ``^ & < > |``."""

    name = "batch"

    _SPECIAL = re.compile(r"([\^&<>|])")

    def variants(self, secret: str) -> Iterable[str]:
        escaped = self._SPECIAL.sub(r"^\1", secret)
        if escaped == secret:
            return []
        return [escaped]


_FACTORIES: dict[str, type] = {
    BashQuotedVariants.name: BashQuotedVariants,
    DollarEscapedVariants.name: DollarEscapedVariants,
    BatchEscapedVariants.name: BatchEscapedVariants,
}

KNOWN_VARIANTS: tuple[str, ...] = tuple(_FACTORIES)


def get_variant_factories(names: Optional[Iterable[str]] = None) -> list[SecretVariantFactory]:
    """Resolve variant names to factory instances.

    Args:
        names: Variant names in the order they should run. ``None`` selects
               every known variant.

    Returns:
        List of factory instances.

    Raises:
        ValueError: If a name is not a known variant.
    """
    if names is None:
        names = KNOWN_VARIANTS

    factories = []
    for name in names:
        factory_cls = _FACTORIES.get(name)
        if factory_cls is None:
            raise ValueError(
                f"Unknown secret variant: {name!r} (known: {', '.join(KNOWN_VARIANTS)})"
            )
        factories.append(factory_cls())
    return factories


def expand_secret(secret: str, factories: Iterable[SecretVariantFactory]) -> set[str]:
    """Return ``secret`` plus every non-empty variant the factories produce."""
    forms = {secret}
    for factory in factories:
        forms.update(v for v in factory.variants(secret) if v)
    return forms
