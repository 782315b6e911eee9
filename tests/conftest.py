"""Shared fixtures."""

import pytest

from agent_mailbox.config import RuntimeConfig, reset_config
from agent_mailbox.persistence import InMemorySnapshotStore
from agent_mailbox.runtime import Runtime


@pytest.fixture(autouse=True)
def clean_config():
    """Make sure no test leaks process-wide configuration into another."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def runtime_config():
    """Fast retries and short grace periods."""
    return RuntimeConfig(
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        call_timeout_seconds=5.0,
        cancel_grace_seconds=1.0,
    )


@pytest.fixture
def store():
    return InMemorySnapshotStore()


@pytest.fixture
async def runtime(runtime_config, store):
    """A runtime with in-memory persistence, shut down after the test."""
    runtime = Runtime(config=runtime_config, store=store)
    yield runtime
    await runtime.shutdown()
