"""
Shared fixtures: in-memory backends wired the way the service wires them.
"""

import pytest

from kvmirror.bus.memory import InMemoryTopicBus
from kvmirror.config import DispatchQueueConfig, MirrorConfig, RetryConfig
from kvmirror.kv.memory import InMemoryKvStore
from kvmirror.mirror.safe_ops import SafeOperations
from kvmirror.retry.dispatch_queue import DelayedDispatchQueue
from kvmirror.store.memory import InMemoryDocumentStore


class FakeClock:
    """Settable clock returning seconds."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += minutes * 60 + seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return InMemoryKvStore()


@pytest.fixture
async def bus():
    bus = InMemoryTopicBus()
    await bus.connect()
    yield bus
    await bus.close()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def queue_config():
    return DispatchQueueConfig()


@pytest.fixture
def retry_config():
    return RetryConfig()


@pytest.fixture
def mirror_config():
    return MirrorConfig()


@pytest.fixture
def queue(store, bus, queue_config, clock):
    return DelayedDispatchQueue(store, bus, queue_config, clock=clock)


@pytest.fixture
def safe_ops(kv, queue, retry_config):
    return SafeOperations(kv, queue, retry_topic=retry_config.topic)
