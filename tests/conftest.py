"""Shared fixtures for relay tests."""

import pytest

from pulse_relay.connection import Connection
from pulse_relay.models.principal import Principal
from pulse_relay.registry import ConnectionRegistry
from pulse_relay.relay import MessageRelay

from fakes import FakeMembership, FakeReads, FakeTransport, ManualClock


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def membership() -> FakeMembership:
    return FakeMembership({"c1": {"alice", "bob"}})


@pytest.fixture
def reads() -> FakeReads:
    return FakeReads()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def relay(registry, membership, reads, clock) -> MessageRelay:
    return MessageRelay(registry, members=membership, reads=reads, clock=clock)


@pytest.fixture
def connect(registry):
    """Register a fake connection for a principal; returns (connection, transport)."""

    def _connect(principal: Principal) -> tuple[Connection, FakeTransport]:
        transport = FakeTransport()
        connection = Connection(transport, principal, write_timeout=0.2)
        registry.register(principal, connection)
        return connection, transport

    return _connect
