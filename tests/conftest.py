"""Shared fixtures: a controllable clock and fresh stores per test."""

import pytest

from tradecopier.core.acks import AckHandler
from tradecopier.core.delivery import DeliveryHandler
from tradecopier.core.ingress import IngressHandler, PushRequest
from tradecopier.core.store import CopierStore
from tradecopier.storage.memory import MemoryBackend


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


def _make_push(group="G1", type="OPEN", ticket=100, open_time=1_699_999_000, **kwargs) -> PushRequest:
    fields = {"symbol": "EURUSD", "lots": 0.1, "price": 1.1, "master_equity": 1000.0}
    fields.update(kwargs)
    return PushRequest(group=group, type=type, master_ticket=ticket, open_time=open_time, **fields)


@pytest.fixture
def make_push():
    """Factory for valid pushes; override any field by keyword."""
    return _make_push


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, clock):
    return CopierStore(backend, clock=clock)


@pytest.fixture
def ingress(store):
    return IngressHandler(store)


@pytest.fixture
def delivery(store):
    return DeliveryHandler(store)


@pytest.fixture
def acks(store):
    return AckHandler(store)
