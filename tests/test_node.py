"""Tests for execution nodes and the per-node resolution protocol."""

import pickle
import threading

import pytest

from logmask.config.settings import MaskingSettings
from logmask.core.decorators import (
    DecoratorRegistry,
    ExecutionContext,
    MaskingDecoratorFactory,
    ResolutionError,
)
from logmask.core.node import ContextOutput, ExecutionNode, ResolutionProtocolError
from logmask.core.secrets import SecretScopeRegistry, get_secret_registry
from logmask.core.supplier import ScopedPatternSupplier
from logmask.logging.setup import get_execution_context


class CountingFactory:
    def __init__(self):
        self.calls = 0

    def of(self, context):
        self.calls += 1
        return None


class BrokenFactory:
    def of(self, context):
        raise OSError("vault sealed")


class ContextRecordingFactory:
    """Records the logging context seen while resolving and writing."""

    def __init__(self):
        self.seen = []

    def of(self, context):
        self.seen.append(get_execution_context())
        return self

    def decorate(self, sink):
        factory = self

        class RecordingLayer:
            def write(self, data):
                factory.seen.append(get_execution_context())
                return sink.write(data)

        return RecordingLayer()


@pytest.fixture
def node(secret_registry):
    secret_registry.get_or_create("build-42").add("s3cr3t")
    return ExecutionNode("agent-1", secrets=secret_registry)


@pytest.fixture
def context():
    return ExecutionContext(node_id="agent-1", channel="console", scope_id="build-42")


class TestOpenOutput:

    def test_masks_written_output(self, node, context, sink):
        output = node.open_output(context, sink)
        assert isinstance(output, ContextOutput)
        output.write(b"user=admin pass=s3cr3t\n")
        node.close_output(context)

        assert sink.getvalue() == b"user=admin pass=****\n"
        assert sink.closes == 1

    def test_reuses_open_output(self, context, sink):
        factory = CountingFactory()
        registry = DecoratorRegistry()
        registry.register(factory)
        node = ExecutionNode("agent-1", decorators=registry)

        first = node.open_output(context, sink)
        assert node.open_output(context, sink) is first
        assert factory.calls == 1

    def test_reopens_after_close(self, node, context, make_sink):
        first = node.open_output(context, make_sink())
        node.close_output(context)
        second = node.open_output(context, make_sink())
        assert second is not first
        assert not second.closed

    def test_foreign_context_rejected(self, node, sink):
        foreign = ExecutionContext(node_id="controller", channel="console", scope_id="build-42")
        with pytest.raises(ResolutionProtocolError, match="owned by node controller"):
            node.open_output(foreign, sink)

    def test_resolution_failure_leaves_no_output(self, context, sink):
        registry = DecoratorRegistry()
        registry.register(BrokenFactory())
        node = ExecutionNode("agent-1", decorators=registry)

        with pytest.raises(ResolutionError):
            node.open_output(context, sink)

        assert node.output_for(context) is None
        with pytest.raises(ResolutionProtocolError):
            node.write(context, b"s3cr3t")
        assert sink.getvalue() == b""

    def test_logging_context_scoped_to_operations(self, context, sink):
        factory = ContextRecordingFactory()
        registry = DecoratorRegistry()
        registry.register(factory)
        node = ExecutionNode("agent-1", decorators=registry)

        output = node.open_output(context, sink)
        assert get_execution_context() == ""

        output.write(b"line")
        assert get_execution_context() == ""
        assert factory.seen == ["agent-1/console", "agent-1/console"]

    def test_uses_given_settings(self, secret_registry, context, sink):
        secret_registry.get_or_create("build-42").add("s3cr3t")
        node = ExecutionNode(
            "agent-1", secrets=secret_registry, settings=MaskingSettings(mask_token="###")
        )
        output = node.open_output(context, sink)
        output.write(b"s3cr3t")
        output.close()
        assert sink.getvalue() == b"###"

    def test_defaults_to_process_registries(self, context, sink):
        get_secret_registry().get_or_create("build-42").add("s3cr3t")
        node = ExecutionNode("agent-1")
        output = node.open_output(context, sink)
        output.write(b"s3cr3t")
        output.close()
        assert sink.getvalue() == b"****"


class TestWrite:

    def test_write_requires_local_resolution(self, node, context):
        with pytest.raises(ResolutionProtocolError, match="no locally resolved output"):
            node.write(context, b"s3cr3t")

    def test_write_through_node(self, node, context, sink):
        node.open_output(context, sink)
        node.write(context, b"key: s3c")
        node.write(context, b"r3t\n")
        node.shutdown()
        assert sink.getvalue() == b"key: ****\n"

    def test_text_is_encoded(self, node, context, sink):
        output = node.open_output(context, sink)
        output.write("clé=s3cr3t")
        output.close()
        assert sink.getvalue() == "clé=****".encode("utf-8")

    def test_write_after_close_rejected(self, node, context, sink):
        output = node.open_output(context, sink)
        output.close()
        with pytest.raises(ValueError):
            output.write(b"late")

    def test_passthrough_output(self, context, sink):
        node = ExecutionNode("agent-1", decorators=DecoratorRegistry())
        output = node.open_output(context, sink)
        assert output.passthrough
        output.write("plain s3cr3t")
        assert sink.getvalue() == b"plain s3cr3t"

    def test_passthrough_text_uses_configured_encoding(self, context, sink):
        node = ExecutionNode(
            "agent-1",
            decorators=DecoratorRegistry(),
            settings=MaskingSettings(encoding="utf-16-le"),
        )
        output = node.open_output(context, sink)
        output.write("plain")
        assert sink.getvalue() == "plain".encode("utf-16-le")

    def test_text_in_bom_encoding_is_masked(self, secret_registry, context, sink):
        secret_registry.get_or_create("build-42").add("s3cr3t")
        node = ExecutionNode(
            "agent-1", secrets=secret_registry, settings=MaskingSettings(encoding="utf-16")
        )
        output = node.open_output(context, sink)
        output.write("echo s3c")
        output.write("r3t done")
        output.close()

        # Text chunks are encoded without a byte order mark in front of each
        assert sink.getvalue() == "echo **** done".encode(output.encoding)
        assert output.encoding in ("utf-16-le", "utf-16-be")


class TestStackedMaskingLayers:

    @pytest.fixture
    def stacked_node(self, secret_registry):
        secret_registry.get_or_create("build-42").add("s3cr3t")
        registry = DecoratorRegistry()
        registry.register(MaskingDecoratorFactory(secrets=secret_registry))
        registry.register(MaskingDecoratorFactory(secrets=secret_registry))
        return ExecutionNode("agent-1", decorators=registry)

    def test_finish_emits_every_layer_tail(self, stacked_node, context, sink):
        output = stacked_node.open_output(context, sink)
        output.write(b"hello world tail")
        output.finish()

        assert sink.getvalue() == b"hello world tail"
        assert sink.closes == 0

    def test_finish_masks_secret_split_across_writes(self, stacked_node, context, sink):
        output = stacked_node.open_output(context, sink)
        output.write(b"pw s3c")
        output.write(b"r3t end")
        output.finish()
        assert sink.getvalue() == b"pw **** end"

    def test_close_emits_every_layer_tail(self, stacked_node, context, sink):
        output = stacked_node.open_output(context, sink)
        output.write(b"last s3cr3t")
        output.close()
        assert sink.getvalue() == b"last ****"
        assert sink.closes == 1


class TestOutputTransfer:

    def test_output_cannot_be_pickled(self, node, context, sink):
        output = node.open_output(context, sink)
        with pytest.raises(ResolutionProtocolError, match="cannot be transferred"):
            pickle.dumps(output)

    def test_adopt_own_output(self, node, context, sink):
        other = ExecutionNode("agent-1", secrets=node.secrets)
        output = other.open_output(context, sink)

        assert node.adopt(output) is output
        assert node.output_for(context) is output

    def test_adopt_foreign_output_rejected(self, node, sink):
        controller = ExecutionNode("controller", secrets=node.secrets)
        controller_context = ExecutionContext("controller", "console", "build-42")
        output = controller.open_output(controller_context, sink)

        with pytest.raises(ResolutionProtocolError, match="resolved on node controller"):
            node.adopt(output)

    def test_context_and_supplier_cross_nodes(self):
        controller_secrets = SecretScopeRegistry()
        controller_secrets.get_or_create("build-42").add("controller-secret")

        # What the controller ships to an agent: the context and a supplier recipe
        context = ExecutionContext("agent-1", "console", "build-42")
        supplier = ScopedPatternSupplier("build-42", registry=controller_secrets)
        payload = pickle.dumps((context, supplier))
        assert b"controller-secret" not in payload

        # The agent process has its own secrets for the scope
        get_secret_registry().get_or_create("build-42").add("agent-secret")
        remote_context, remote_supplier = pickle.loads(payload)
        assert remote_supplier.get().mask(b"agent-secret", b"*") == (b"*", 1)

        agent = ExecutionNode("agent-1")
        sink = []

        class ListSink:
            def write(self, data):
                sink.append(bytes(data))
                return len(data)

        output = agent.open_output(remote_context, ListSink())
        output.write(b"agent-secret controller-secret")
        output.finish()
        assert b"".join(sink) == b"**** controller-secret"


class TestShutdown:

    def test_shutdown_emits_retained_tails(self, node, make_sink):
        sinks = {name: make_sink() for name in ("console", "steps")}
        for name, channel_sink in sinks.items():
            output = node.open_output(ExecutionContext("agent-1", name, "build-42"), channel_sink)
            output.write(b"s3cr")

        # Nothing is final until the outputs are finished
        assert all(s.getvalue() == b"" for s in sinks.values())
        node.shutdown()

        for channel_sink in sinks.values():
            assert channel_sink.getvalue() == b"s3cr"
            assert channel_sink.closes == 1

    def test_close_unknown_output_is_noop(self, node, context):
        node.close_output(context)


class TestManyNodes:

    def test_nodes_mask_identically(self, make_sink):
        text = b"deploy --token s3cr3t --user admin\n" * 20
        results = []

        for node_id in ("controller", "agent-1", "agent-2"):
            secrets = SecretScopeRegistry()
            secrets.get_or_create("build-42").add("s3cr3t")
            node = ExecutionNode(node_id, secrets=secrets)
            node_sink = make_sink()
            output = node.open_output(ExecutionContext(node_id, "console", "build-42"), node_sink)
            for i in range(0, len(text), 7):
                output.write(text[i:i + 7])
            output.close()
            results.append(node_sink.getvalue())

        assert results[0] == results[1] == results[2]
        assert b"s3cr3t" not in results[0]
        assert results[0].count(b"****") == 20

    def test_concurrent_nodes(self, make_sink):
        secrets = SecretScopeRegistry()
        secrets.get_or_create("build-42").add("s3cr3t", "p@ss w0rd")
        nodes = [ExecutionNode(f"agent-{i}", secrets=secrets) for i in range(4)]
        sinks = [make_sink() for _ in nodes]
        errors = []

        def produce(node, node_sink):
            try:
                context = ExecutionContext(node.node_id, "console", "build-42")
                node.open_output(context, node_sink)
                for i in range(100):
                    node.write(context, f"line {i} s3cr3t p@ss w0rd\n".encode())
                node.shutdown()
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=produce, args=pair) for pair in zip(nodes, sinks)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for node_sink in sinks:
            value = node_sink.getvalue()
            assert value.count(b"****") == 200
            assert b"s3cr3t" not in value
            assert b"p@ss" not in value
