"""
Aggregate Secret Pattern

Compiles a set of plain-text secrets into one immutable matcher that finds
any of them as a literal byte substring.

Each secret (and each of its variants, see ``logmask.core.variants``) is
encoded with the output encoding, escaped so it is matched literally, and
placed in one alternation ordered longest-first. Python's regex engine tries
alternatives left to right, so at the leftmost matching position the longest
secret wins and no recognizable remainder of a longer secret is left behind.

Example:
    >>> pattern = build_aggregate_pattern({"ab", "abc"}, variants=[])
    >>> pattern.mask(b"xabcy", b"****")
    (b'x****y', 1)
"""

import codecs
import re
import sys
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from logmask.core.variants import SecretVariantFactory, expand_secret
from logmask.logging.setup import get_logger
from logmask.metrics.collectors import (
    PATTERN_BUILD_DURATION,
    PATTERN_BUILD_FAILURES,
    PATTERN_BUILDS,
)

logger = get_logger(__name__)

DEFAULT_MAX_PATTERN_BYTES = 4_000_000


class PatternBuildError(ValueError):
    """Raised when the aggregate pattern cannot be compiled.

    Callers must not fall back to unmasked output when they see this.
    """


@dataclass(frozen=True, repr=False)
class AggregatePattern:
    """Immutable snapshot matcher for a set of secrets.

    Attributes:
        regex: Compiled byte pattern, or None for the no-op pattern.
        max_length: Length in bytes of the longest alternative (0 when no-op).
        alternatives: Number of distinct literal alternatives.
        encoding: Encoding the alternatives were encoded with.
    """

    regex: Optional[re.Pattern]
    max_length: int = 0
    alternatives: int = 0
    encoding: str = "utf-8"

    @property
    def is_noop(self) -> bool:
        """True when the pattern can never match."""
        return self.regex is None

    def finditer(self, data: bytes, pos: int = 0, endpos: Optional[int] = None) -> Iterator[re.Match]:
        """Iterate over non-overlapping leftmost-longest matches in ``data``."""
        if self.regex is None:
            return iter(())
        if endpos is None:
            endpos = len(data)
        return self.regex.finditer(data, pos, endpos)

    def mask(self, data: bytes, token: bytes) -> tuple[bytes, int]:
        """Replace every match in ``data`` with ``token``.

        Returns:
            Tuple of (masked bytes, number of replacements).
        """
        if self.regex is None or not data:
            return data, 0
        return self.regex.subn(lambda _m: token, data)

    def __repr__(self) -> str:
        # Never render the regex source, it contains the secrets
        if self.regex is None:
            return "AggregatePattern(noop)"
        return (
            f"AggregatePattern(alternatives={self.alternatives}, "
            f"max_length={self.max_length}, encoding={self.encoding!r})"
        )


NOOP_PATTERN = AggregatePattern(regex=None)


def stream_encoding(encoding: str) -> str:
    """Return the codec name used to encode secrets and output for ``encoding``.

    Secrets are encoded one by one and matched anywhere in the output, so the
    codec must not put a byte order mark in front of each encoded value.
    ``utf-16`` and ``utf-32`` map to their native-order forms (the order they
    use after the mark) and ``utf-8-sig`` maps to ``utf-8``.

    Raises:
        LookupError: If the encoding is unknown.
        ValueError: If the encoding still emits bytes for empty text.
    """
    name = codecs.lookup(encoding).name
    if name in ("utf-16", "utf-32"):
        name = f"{name}-{'le' if sys.byteorder == 'little' else 'be'}"
    elif name == "utf-8-sig":
        name = "utf-8"

    if "".encode(name):
        raise ValueError(
            f"Encoding {encoding!r} emits a byte order mark and cannot be used for masking"
        )
    return name


def build_aggregate_pattern(
    secrets: Iterable[Optional[str]],
    *,
    encoding: str = "utf-8",
    variants: Optional[Iterable[SecretVariantFactory]] = None,
    max_pattern_bytes: int = DEFAULT_MAX_PATTERN_BYTES,
) -> AggregatePattern:
    """Build one matcher for the union of ``secrets``.

    Args:
        secrets: Plain-text secret values. Empty strings and None are dropped.
        encoding: Encoding the filtered output uses.
        variants: Variant factories applied to every secret. None or empty
                  means only the literal secrets are matched.
        max_pattern_bytes: Upper bound on the size of the combined
                           expression source.

    Returns:
        An AggregatePattern, or NOOP_PATTERN when no secret remains.

    Raises:
        PatternBuildError: If the encoding is unusable for masking, a secret
                           cannot be encoded, the expression exceeds
                           ``max_pattern_bytes``, or the regex engine rejects it.
    """
    try:
        encoding = stream_encoding(encoding)
    except (LookupError, ValueError) as e:
        raise PatternBuildError(f"Unusable output encoding {encoding!r}: {e}") from e

    factories = list(variants or [])
    dropped = 0
    forms: set[str] = set()
    for secret in secrets:
        if not secret:
            dropped += 1
            continue
        forms.update(expand_secret(secret, factories))

    if dropped:
        logger.debug(
            "Dropped empty secret values",
            extra={"event": "empty_secrets_dropped", "count": dropped},
        )

    if not forms:
        return NOOP_PATTERN

    start_time = time.perf_counter()
    try:
        encoded = set()
        for form in forms:
            try:
                encoded.add(form.encode(encoding))
            except UnicodeEncodeError as e:
                raise PatternBuildError(
                    f"Secret cannot be represented in output encoding {encoding!r}"
                ) from e

        # Longest first, ties broken by byte value for a deterministic source
        ordered = sorted(encoded, key=lambda b: (-len(b), b))
        source = b"|".join(re.escape(b) for b in ordered)
        if len(source) > max_pattern_bytes:
            raise PatternBuildError(
                f"Aggregate secret pattern is {len(source)} bytes, "
                f"limit is {max_pattern_bytes}"
            )

        try:
            regex = re.compile(source)
        except (re.error, OverflowError, RecursionError, MemoryError) as e:
            raise PatternBuildError(
                f"Aggregate secret pattern failed to compile ({len(ordered)} alternatives)"
            ) from e
    except PatternBuildError as e:
        PATTERN_BUILD_FAILURES.inc()
        logger.error(
            "Aggregate secret pattern build failed",
            extra={"event": "pattern_build_failed", "secret_count": len(forms), "reason": str(e)},
        )
        raise

    PATTERN_BUILDS.inc()
    PATTERN_BUILD_DURATION.observe(time.perf_counter() - start_time)

    pattern = AggregatePattern(
        regex=regex,
        max_length=len(ordered[0]),
        alternatives=len(ordered),
        encoding=encoding,
    )
    logger.debug(
        "Aggregate secret pattern built",
        extra={
            "event": "pattern_built",
            "alternatives": pattern.alternatives,
            "max_length": pattern.max_length,
        },
    )
    return pattern
