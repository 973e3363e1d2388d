"""
Masking Output Stream

This module provides a byte stream wrapper that replaces every active secret
with a fixed mask token before the bytes reach the real sink.

The core challenge: console output arrives in arbitrary chunks, so a secret
may be split across writes:
    Write 1: "echo s3c"
    Write 2: "r3t done"

Emitting write 1 as-is would leak a prefix that can never be taken back, and
the two halves together would spell out the secret. The stream therefore
holds back the last ``max_length - 1`` bytes of every write (the retention
buffer) and rescans them together with the next chunk.

Example:
    >>> import io
    >>> from logmask.core.patterns import build_aggregate_pattern
    >>> from logmask.core.supplier import StaticPatternSupplier
    >>> sink = io.BytesIO()
    >>> supplier = StaticPatternSupplier(build_aggregate_pattern({"s3cr3t"}))
    >>> stream = MaskingStream(sink, supplier, close_sink=False)
    >>> stream.write(b"echo s3c")
    8
    >>> stream.write(b"r3t done")
    8
    >>> stream.close()
    >>> sink.getvalue()
    b'echo **** done'
"""

import codecs
import threading
from typing import Any, Optional, Union

from logmask.core.patterns import AggregatePattern, stream_encoding
from logmask.core.supplier import PatternSupplier
from logmask.logging.setup import get_logger
from logmask.metrics.collectors import RETAINED_BYTES, SECRETS_MASKED

logger = get_logger(__name__)

DEFAULT_MASK_TOKEN = "****"


class MaskingStream:
    """Streaming secret redaction in front of a binary sink.

    Each write scans the retained bytes plus the new chunk against the
    supplier's current pattern. Matches that are already decided are
    replaced by the mask token and emitted together with the surrounding
    text; the undecided tail is retained for the next write.

    A match starting before the safe cut is always decided: at least
    ``max_length`` bytes follow its start in the window, so no longer
    alternative can still complete there. Such a match is emitted whole,
    even if it ends after the cut.

    Thread Safety:
        Writes must come from one producer at a time. ``finish()`` and
        ``close()`` may be called concurrently and run exactly once.

    Attributes:
        encoding: Codec of the output (and of ``str`` chunks), in the form
                  that writes no byte order mark.
        mask_token: Encoded placeholder substituted for every match.
        masked_count: Number of matches replaced so far.
    """

    def __init__(
        self,
        sink: Any,
        supplier: PatternSupplier,
        *,
        encoding: str = "utf-8",
        mask_token: str = DEFAULT_MASK_TOKEN,
        close_sink: bool = True,
    ) -> None:
        """Initialize the stream.

        Args:
            sink: Binary file-like object with ``write``; ``flush`` and
                  ``close`` are used when present.
            supplier: PatternSupplier for the scope being filtered.
            encoding: Output encoding. ``utf-16``, ``utf-32`` and ``utf-8-sig``
                      are matched in their native-order, mark-free form.
            mask_token: Placeholder text for masked secrets. Must be non-empty.
            close_sink: Whether ``close()`` also closes the sink.

        Raises:
            ValueError: If ``mask_token`` is empty or the encoding cannot be
                        used for masking.
            LookupError: If the encoding is unknown.
        """
        if not mask_token:
            raise ValueError("mask_token cannot be empty")

        self._sink = sink
        self._supplier = supplier
        self.encoding = stream_encoding(encoding)
        self.mask_token = mask_token.encode(self.encoding)
        self._close_sink = close_sink
        self._utf8 = self.encoding == "utf-8"

        self._retained = b""
        self.masked_count = 0

        self._close_lock = threading.Lock()
        self._finished = False
        self._closed = False

    @property
    def retained(self) -> bytes:
        """Bytes currently held back awaiting more input."""
        return self._retained

    @property
    def closed(self) -> bool:
        return self._finished

    def write(self, data: Union[bytes, bytearray, memoryview, str]) -> int:
        """Scan ``data`` and forward everything that is safe to emit.

        Args:
            data: Next chunk of output. ``str`` is encoded with ``encoding``.

        Returns:
            Number of input bytes accepted (all of them).

        Raises:
            ValueError: If the stream has been closed.
            PatternBuildError: If the current secret set cannot be compiled.
        """
        if self._finished:
            raise ValueError("write to closed MaskingStream")

        if isinstance(data, str):
            data = data.encode(self.encoding)
        else:
            data = bytes(data)
        if not data:
            return 0

        pattern = self._supplier.get()
        window = self._retained + data if self._retained else data

        if pattern.is_noop:
            self._sink.write(window)
            self._retained = b""
            return len(data)

        output, tail, count = self._scan(window, pattern, final=False)
        if output:
            self._sink.write(output)

        # Only now is the new boundary committed; a failing sink leaves it as it was
        self._retained = tail
        self._record(count)
        RETAINED_BYTES.observe(len(tail))
        return len(data)

    def flush(self) -> None:
        """Flush the sink.

        Retained bytes stay retained: they may be the start of a secret that
        the next write completes. Use ``finish()`` or ``close()`` at the end
        of the output.
        """
        if self._closed:
            return
        flush = getattr(self._sink, "flush", None)
        if flush is not None:
            flush()

    def finish(self) -> None:
        """Scan and emit the retained bytes as the end of the output.

        When the sink is itself a stream with ``finish()`` (another masking
        layer), it is finished too, so its retained tail is emitted as well.
        Plain sinks are flushed.

        Idempotent; concurrent callers emit the tail exactly once.
        """
        with self._close_lock:
            if self._finished:
                return

            if self._retained:
                pattern = self._supplier.get()
                output, _, count = self._scan(self._retained, pattern, final=True)
                self._sink.write(output)
                self._retained = b""
                self._record(count)

            finish = getattr(self._sink, "finish", None)
            if finish is not None:
                finish()
            else:
                flush = getattr(self._sink, "flush", None)
                if flush is not None:
                    flush()

            self._finished = True

        logger.debug(
            "Masking stream finished",
            extra={"event": "masking_stream_finished", "masked_count": self.masked_count},
        )

    def close(self) -> None:
        """Finish the output and close the sink (when ``close_sink``)."""
        self.finish()
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            if self._close_sink:
                close = getattr(self._sink, "close", None)
                if close is not None:
                    close()

    def _scan(
        self,
        window: bytes,
        pattern: AggregatePattern,
        final: bool,
    ) -> tuple[bytes, bytes, int]:
        """Split ``window`` into (masked safe output, retained tail, matches)."""
        if pattern.is_noop:
            return window, b"", 0

        size = len(window)
        if final:
            cut = size
        else:
            cut = max(0, size - (pattern.max_length - 1))
            cut = self._char_boundary(window, cut)

        pieces = []
        pos = 0
        count = 0
        for match in pattern.finditer(window):
            if match.start() >= cut:
                break
            pieces.append(window[pos:match.start()])
            pieces.append(self.mask_token)
            pos = match.end()
            count += 1

        cut = max(cut, pos)
        pieces.append(window[pos:cut])
        return b"".join(pieces), window[cut:], count

    def _char_boundary(self, window: bytes, cut: int) -> int:
        """Move ``cut`` back so it does not split a multi-byte character."""
        if cut == 0:
            return 0
        if self._utf8:
            return _utf8_boundary(window, cut)

        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        decoder.decode(window[:cut], final=False)
        pending = decoder.getstate()[0]
        return cut - len(pending)

    def _record(self, count: int) -> None:
        if count:
            self.masked_count += count
            SECRETS_MASKED.inc(count)

    def __enter__(self) -> "MaskingStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __reduce__(self):
        raise TypeError(
            "MaskingStream is bound to the node that created it and cannot be "
            "serialized; resolve decorators on the producing node instead"
        )

    def __repr__(self) -> str:
        return (
            f"MaskingStream(encoding={self.encoding!r}, retained={len(self._retained)}, "
            f"masked_count={self.masked_count}, closed={self._finished})"
        )


def _utf8_boundary(window: bytes, cut: int) -> int:
    """Return ``cut`` or the start of the incomplete UTF-8 sequence ending there."""
    continuation = 0
    while continuation < 3 and cut - 1 - continuation >= 0 and window[cut - 1 - continuation] & 0xC0 == 0x80:
        continuation += 1

    lead_index = cut - 1 - continuation
    if lead_index < 0:
        return cut

    lead = window[lead_index]
    if lead < 0x80:
        expected = 1
    elif lead >> 5 == 0b110:
        expected = 2
    elif lead >> 4 == 0b1110:
        expected = 3
    elif lead >> 3 == 0b11110:
        expected = 4
    else:
        # Not valid UTF-8, nothing to protect
        return cut

    if continuation + 1 < expected:
        return lead_index
    return cut
