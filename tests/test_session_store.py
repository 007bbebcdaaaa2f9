"""Tests for the session store."""

import asyncio
from collections.abc import Callable
from typing import Any

from aiosoundsync.models import Role
from aiosoundsync.server.session import Session, SessionStore


class TestUpsert:
    """Tests for registering connections."""

    async def test_new_session(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test the first connection creates a follower session."""
        session, created = store.upsert("a", sink_factory(), "10.1.0.1", "10.1")
        assert created is True
        assert session.connected is True
        assert session.role is Role.FOLLOWER
        assert "a" in store
        assert len(store) == 1

    async def test_reconnect_keeps_role_and_latency(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test a reconnection replaces only the transport and origin."""
        first = sink_factory()
        _ = store.upsert("a", first, "10.1.0.1", "10.1")
        store.set_role("a", Role.HOST)
        store.set_latency("a", 42.0)
        store.set_room_code("a", "ABC123")
        second = sink_factory()
        session, created = store.upsert("a", second, "10.2.0.1", "10.2", claimed_host=True)
        assert created is False
        assert session.role is Role.HOST
        assert session.latency_ms == 42.0
        assert session.room_code == "ABC123"
        assert session.network_id == "10.2"
        assert session.claimed_host is True
        assert store.connection("a") is second


class TestDetach:
    """Tests for transport detachment."""

    async def test_detach_current_connection(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test detaching the live connection keeps the session."""
        sink = sink_factory()
        _ = store.upsert("a", sink, "10.1.0.1", "10.1")
        session = store.detach("a", sink)
        assert session is not None
        assert session.connected is False
        assert "a" in store
        assert store.connection("a") is None

    async def test_stale_detach_ignored(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test the close of a replaced connection does not detach the new one."""
        old, new = sink_factory(), sink_factory()
        _ = store.upsert("a", old, "10.1.0.1", "10.1")
        _ = store.upsert("a", new, "10.1.0.1", "10.1")
        assert store.detach("a", old) is None
        assert store.connection("a") is new

    async def test_detach_unknown(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test detaching an unknown identity is a no-op."""
        assert store.detach("ghost", sink_factory()) is None


class TestPendingRemoval:
    """Tests for the reconnection grace period."""

    async def test_removal_after_grace(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test a session that does not reconnect is removed and listeners run."""
        removed: list[Session] = []

        async def on_removed(session: Session) -> None:
            removed.append(session)

        _ = store.add_removal_listener(on_removed)
        sink = sink_factory()
        _ = store.upsert("a", sink, "10.1.0.1", "10.1")
        _ = store.detach("a", sink)
        store.mark_pending_removal("a", 0.01)
        assert store.is_pending_removal("a")
        await asyncio.sleep(0.05)
        assert "a" not in store
        assert [s.identity for s in removed] == ["a"]

    async def test_cancel_prevents_removal(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test cancelling the timer keeps the session."""
        sink = sink_factory()
        _ = store.upsert("a", sink, "10.1.0.1", "10.1")
        _ = store.detach("a", sink)
        store.mark_pending_removal("a", 0.01)
        assert store.cancel_pending_removal("a") is True
        await asyncio.sleep(0.05)
        assert "a" in store
        assert store.cancel_pending_removal("a") is False

    async def test_reconnected_session_not_removed(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test an expired timer leaves a reconnected session alone."""
        sink = sink_factory()
        _ = store.upsert("a", sink, "10.1.0.1", "10.1")
        _ = store.detach("a", sink)
        store.mark_pending_removal("a", 0.01)
        _ = store.upsert("a", sink_factory(), "10.1.0.1", "10.1")
        await asyncio.sleep(0.05)
        assert "a" in store

    async def test_listener_failure_does_not_block_others(
        self, store: SessionStore, sink_factory: Callable[..., Any]
    ) -> None:
        """Test one failing removal listener does not stop the next."""
        seen: list[str] = []

        async def broken(_session: Session) -> None:
            raise RuntimeError("boom")

        async def working(session: Session) -> None:
            seen.append(session.identity)

        _ = store.add_removal_listener(broken)
        unsubscribe = store.add_removal_listener(working)
        _ = store.upsert("a", sink_factory(), "10.1.0.1", "10.1")
        removed = await store.remove("a")
        assert removed is not None
        assert seen == ["a"]
        unsubscribe()
        _ = store.upsert("b", sink_factory(), "10.1.0.2", "10.1")
        _ = await store.remove("b")
        assert seen == ["a"]
