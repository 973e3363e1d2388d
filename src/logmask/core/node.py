"""
Execution Nodes

An ExecutionNode is one place where output is produced: the controller
process, or any agent that runs part of a build and writes its console
output directly. Each node resolves the decorator registry itself, for every
context it owns, before the first byte of that context is written.

Example:
    >>> import io
    >>> from logmask.core.secrets import SecretScopeRegistry
    >>> secrets = SecretScopeRegistry()
    >>> secrets.get_or_create("build-42").add("s3cr3t")
    >>> node = ExecutionNode("agent-1", secrets=secrets)
    >>> context = ExecutionContext("agent-1", "console", "build-42")
    >>> sink = io.BytesIO()
    >>> output = node.open_output(context, sink)
    >>> _ = output.write(b"token=s3cr3t\\n")
    >>> output.finish()
    >>> sink.getvalue()
    b'token=****\\n'
"""

import threading
from typing import Any, Optional, Union

from logmask.core.decorators import (
    DecoratorRegistry,
    ExecutionContext,
    MaskingDecoratorFactory,
    ResolvedDecorators,
    get_decorator_registry,
)
from logmask.core.patterns import stream_encoding
from logmask.core.secrets import SecretScopeRegistry, get_secret_registry
from logmask.logging.setup import execution_context, get_logger

logger = get_logger(__name__)


class ResolutionProtocolError(RuntimeError):
    """Output was produced, or handed to a node, without local resolution."""


class ContextOutput:
    """The decorated output of one context, bound to the node that resolved it.

    The same instance serves every write of the context for its lifetime.
    It cannot be serialized: another node has to open its own output.

    ``str`` data is encoded with the node's output encoding. Records logged
    while an operation runs carry the context's ``node_id/channel``.
    """

    def __init__(self, resolved: ResolvedDecorators, sink: Any, encoding: str = "utf-8") -> None:
        self.context = resolved.context
        self.node_id = resolved.node_id
        self.passthrough = resolved.is_passthrough
        self.encoding = stream_encoding(encoding)
        self._sink = sink
        self._stream = resolved.decorate(sink)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stream(self) -> Any:
        """The outermost decorated sink."""
        return self._stream

    def write(self, data: Union[bytes, str]) -> int:
        if self._closed:
            raise ValueError(f"write to closed output {self.context}")
        if isinstance(data, str):
            data = data.encode(self.encoding)
        with execution_context(self.context.node_id, self.context.channel):
            return self._stream.write(data)

    def flush(self) -> None:
        flush = getattr(self._stream, "flush", None)
        if flush is not None:
            flush()

    def finish(self) -> None:
        """Emit everything retained without closing the sink."""
        finish = getattr(self._stream, "finish", None)
        if finish is None:
            self.flush()
            return
        with execution_context(self.context.node_id, self.context.channel):
            finish()

    def close(self) -> None:
        """Finish and close the output. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self._stream, "close", None)
        if close is not None:
            with execution_context(self.context.node_id, self.context.channel):
                close()

    def __reduce__(self):
        raise ResolutionProtocolError(
            f"Output of {self.context} was resolved on node {self.node_id} and cannot "
            "be transferred; open the output on the node that writes it"
        )

    def __repr__(self) -> str:
        return f"ContextOutput(context={str(self.context)!r}, node_id={self.node_id!r}, closed={self._closed})"


class ExecutionNode:
    """A node that produces output and filters it locally.

    Thread Safety:
        Opening, looking up and closing outputs are guarded by a lock.
        Writes to one output must come from one producer at a time.
    """

    def __init__(
        self,
        node_id: str,
        *,
        decorators: Optional[DecoratorRegistry] = None,
        secrets: Optional[SecretScopeRegistry] = None,
        settings: Optional[Any] = None,
    ) -> None:
        """Initialize the node.

        Args:
            node_id: Unique identifier of this node.
            decorators: Decorator registry of this node. None uses the
                        process registry, or, when ``secrets`` is given, a
                        fresh registry masking those secrets.
            secrets: Secret registry of this node. None uses the process
                     registry.
            settings: Optional MaskingSettings for the default masking factory
                      and the output encoding. None reads the process
                      settings when an output is opened.
        """
        self.node_id = node_id
        self.settings = settings
        self.secrets = secrets if secrets is not None else get_secret_registry()

        if decorators is None:
            if secrets is None and settings is None:
                decorators = get_decorator_registry()
            else:
                decorators = DecoratorRegistry()
                decorators.register(MaskingDecoratorFactory(settings=settings, secrets=self.secrets))
        self.decorators = decorators

        self._lock = threading.RLock()
        self._outputs: dict[str, ContextOutput] = {}

    def open_output(self, context: ExecutionContext, sink: Any) -> ContextOutput:
        """Resolve decorators for ``context`` on this node and wrap ``sink``.

        Returns the existing output when the context is already open.

        Raises:
            ResolutionProtocolError: If ``context`` belongs to another node.
            ResolutionError: If a decorator factory fails on this node.
        """
        self._check_owner(context)
        with self._lock:
            existing = self._outputs.get(context.channel)
            if existing is not None and not existing.closed:
                return existing

            with execution_context(context.node_id, context.channel):
                resolved = self.decorators.resolve(context, self.node_id)
                output = ContextOutput(resolved, sink, encoding=self._output_encoding())
                self._outputs[context.channel] = output

                logger.info(
                    f"Opened output {context} with {len(resolved.decorators)} decorator(s)",
                    extra={
                        "event": "output_opened",
                        "node_id": self.node_id,
                        "channel": context.channel,
                        "decorators": len(resolved.decorators),
                    },
                )
        return output

    def _output_encoding(self) -> str:
        settings = self.settings
        if settings is None:
            from logmask.config.settings import get_settings

            settings = get_settings()
        return settings.encoding

    def output_for(self, context: ExecutionContext) -> Optional[ContextOutput]:
        """Return the open output of ``context`` on this node, if any."""
        if context.node_id != self.node_id:
            return None
        with self._lock:
            output = self._outputs.get(context.channel)
            if output is None or output.closed:
                return None
            return output

    def write(self, context: ExecutionContext, data: Union[bytes, str]) -> int:
        """Write through the locally resolved output of ``context``.

        Raises:
            ResolutionProtocolError: If the context was never opened here.
        """
        output = self.output_for(context)
        if output is None:
            logger.error(
                f"Output for {context} written on node {self.node_id} without local resolution",
                extra={"event": "unresolved_write", "node_id": self.node_id, "channel": context.channel},
            )
            raise ResolutionProtocolError(
                f"Context {context} has no locally resolved output on node {self.node_id}"
            )
        return output.write(data)

    def adopt(self, output: ContextOutput) -> ContextOutput:
        """Register an output object created elsewhere in this process.

        Raises:
            ResolutionProtocolError: If ``output`` was resolved on another node.
        """
        if output.node_id != self.node_id or output.context.node_id != self.node_id:
            raise ResolutionProtocolError(
                f"Output of {output.context} was resolved on node {output.node_id}, "
                f"not on {self.node_id}"
            )
        with self._lock:
            self._outputs[output.context.channel] = output
        return output

    def close_output(self, context: ExecutionContext) -> None:
        """Finish and close the output of ``context``."""
        self._check_owner(context)
        with self._lock:
            output = self._outputs.pop(context.channel, None)
        if output is not None:
            output.close()

    def shutdown(self) -> None:
        """Close every open output of this node."""
        with self._lock:
            outputs = list(self._outputs.values())
            self._outputs.clear()
        for output in outputs:
            output.close()

    def _check_owner(self, context: ExecutionContext) -> None:
        if context.node_id != self.node_id:
            raise ResolutionProtocolError(
                f"Context {context} is owned by node {context.node_id}; "
                f"it cannot be resolved on node {self.node_id}"
            )

    def __repr__(self) -> str:
        return f"ExecutionNode(node_id={self.node_id!r}, outputs={len(self._outputs)})"
