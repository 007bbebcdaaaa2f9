"""Test fixtures for aiosoundsync tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import TypeVar

import pytest

from aiosoundsync.models import GroupKind, ServerMessage
from aiosoundsync.server.election import HostElection
from aiosoundsync.server.group import GroupKey, GroupManager
from aiosoundsync.server.session import SessionStore


T = TypeVar("T")


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSink:
    """Records every message sent to a session."""

    def __init__(self, remote: str = "127.0.0.1", *, accept: bool = True) -> None:
        self.remote = remote
        self.accept = accept
        self.messages: list[ServerMessage] = []

    def send_message(self, message: ServerMessage) -> bool:
        if not self.accept:
            return False
        self.messages.append(message)
        return True

    def of_type(self, cls: type[T]) -> list[T]:
        return [m for m in self.messages if isinstance(m, cls)]


@pytest.fixture
def clock() -> FakeClock:
    """Fixture providing a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def sink_factory() -> Callable[..., FakeSink]:
    """Fixture providing the FakeSink class."""
    return FakeSink


@pytest.fixture
async def store() -> AsyncGenerator[SessionStore, None]:
    """Fixture providing a session store on the running loop."""
    sessions = SessionStore(asyncio.get_running_loop())
    yield sessions
    await sessions.close()


@pytest.fixture
def groups() -> GroupManager:
    """Fixture providing an empty group manager."""
    return GroupManager()


@pytest.fixture
def election(store: SessionStore, groups: GroupManager) -> HostElection:
    """Fixture providing a host election over the store and groups."""
    return HostElection(store, groups)


@pytest.fixture
def join(
    store: SessionStore, groups: GroupManager, election: HostElection
) -> Callable[..., FakeSink]:
    """Fixture connecting a session to a network group and settling its role."""

    def _join(identity: str, network_id: str = "10.1", *, accept: bool = True) -> FakeSink:
        sink = FakeSink(f"{network_id}.0.1", accept=accept)
        _ = store.upsert(identity, sink, sink.remote, network_id)
        _ = groups.set_network(identity, network_id)
        _ = election.on_join(GroupKey(GroupKind.NETWORK, network_id), identity)
        return sink

    return _join
