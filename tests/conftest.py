"""Pytest fixtures and configuration."""

import logging

import pytest

from logmask.config.settings import reset_settings
from logmask.core.decorators import reset_decorator_registry
from logmask.core.patterns import build_aggregate_pattern
from logmask.core.secrets import SecretScopeRegistry, reset_secret_registry
from logmask.core.supplier import StaticPatternSupplier


@pytest.fixture(autouse=True)
def isolated_process_state(monkeypatch):
    """Give every test fresh process-wide registries and settings."""
    for name in (
        "LOGMASK_CONFIG_PATH",
        "LOGMASK_MASK_TOKEN",
        "LOGMASK_ENCODING",
        "LOGMASK_VARIANTS",
        "LOGMASK_MAX_PATTERN_BYTES",
        "LOGMASK_LOG_LEVEL",
        "LOGMASK_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)

    reset_settings()
    reset_secret_registry()
    reset_decorator_registry()
    yield
    reset_settings()
    reset_secret_registry()
    reset_decorator_registry()


@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level changed by setup_logging."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield root_logger
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def secret_registry():
    """A node-local secret registry, independent of the process one."""
    return SecretScopeRegistry()


@pytest.fixture
def supplier_for():
    """Build a static supplier for a set of literal secrets."""

    def _make(*secrets, encoding="utf-8"):
        return StaticPatternSupplier(build_aggregate_pattern(secrets, encoding=encoding))

    return _make


class RecordingSink:
    """Binary sink recording every write, flush and close."""

    def __init__(self):
        self.chunks = []
        self.flushes = 0
        self.closes = 0

    def write(self, data):
        self.chunks.append(bytes(data))
        return len(data)

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closes += 1

    def getvalue(self):
        return b"".join(self.chunks)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_sink():
    """Factory for additional RecordingSinks."""
    return RecordingSink
