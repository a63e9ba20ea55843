"""Unit tests for relay frame handling and the relay pool."""

import asyncio

import pytest
import websockets
from unittest.mock import AsyncMock, MagicMock, patch

from nutchat.relay import (
    DEFAULT_RELAYS,
    NostrRelay,
    PoolSubscription,
    RelayPool,
    get_relays_from_env,
)
from nutchat.types import RelayError


def event(event_id):
    return {"id": event_id, "pubkey": "p", "created_at": 1, "kind": 1059, "tags": [], "content": "", "sig": ""}


class TestDispatch:
    def test_event_routed_to_subscription(self):
        relay = NostrRelay("wss://relay.example")
        received = []
        relay.subscriptions["sub"] = received.append
        relay._dispatch(["EVENT", "sub", event("a")])
        relay._dispatch(["EVENT", "other", event("b")])
        assert [e["id"] for e in received] == ["a"]

    @pytest.mark.asyncio
    async def test_ok_resolves_pending_publish(self):
        relay = NostrRelay("wss://relay.example")
        future = asyncio.get_running_loop().create_future()
        relay._pending_ok["abc"] = future
        relay._dispatch(["OK", "abc", False, "blocked: spam"])
        assert await future == (False, "blocked: spam")

    @pytest.mark.asyncio
    async def test_closed_ends_query(self):
        relay = NostrRelay("wss://relay.example")
        relay.subscriptions["sub"] = lambda e: None
        future = asyncio.get_running_loop().create_future()
        relay._eose["sub"] = future
        relay._dispatch(["CLOSED", "sub", "auth-required"])
        assert future.done()
        assert "sub" not in relay.subscriptions


    def test_failing_handler_does_not_stop_dispatch(self):
        relay = NostrRelay("wss://relay.example")
        received = []

        def broken(ev):
            raise ValueError("bad row")

        relay.subscriptions["bad"] = broken
        relay.subscriptions["good"] = received.append
        relay._dispatch(["EVENT", "bad", event("a")])
        relay._dispatch(["EVENT", "good", event("b")])
        assert [e["id"] for e in received] == ["b"]

    @pytest.mark.asyncio
    async def test_send_on_dropped_socket_raises_relay_error(self):
        relay = NostrRelay("wss://relay.example")
        relay.ws = MagicMock(close_code=None)
        relay.ws.send = AsyncMock(
            side_effect=websockets.exceptions.ConnectionClosedError(None, None)
        )
        with pytest.raises(RelayError):
            await relay._send(["CLOSE", "sub"])


class TestPoolSubscription:
    @pytest.mark.asyncio
    async def test_dedup_and_close(self):
        pool = RelayPool()
        received = []
        subscription = PoolSubscription(pool=pool, on_event=received.append)

        subscription._deliver(event("a"))
        subscription._deliver(event("a"))
        await subscription.close()
        subscription._deliver(event("b"))

        assert [e["id"] for e in received] == ["a"]

    @pytest.mark.asyncio
    async def test_close_releases_when_unsubscribe_fails(self):
        pool = RelayPool()
        with patch.object(NostrRelay, "disconnect", AsyncMock()) as disconnect, patch.object(
            NostrRelay,
            "unsubscribe",
            AsyncMock(side_effect=websockets.exceptions.ConnectionClosedError(None, None)),
        ):
            pool.acquire("wss://one.example")
            subscription = PoolSubscription(
                pool=pool, on_event=lambda e: None, sub_ids={"wss://one.example": "sub"}
            )
            await subscription.close()

        disconnect.assert_awaited_once()
        assert pool.relays == {}


class TestRelayPool:
    @pytest.mark.asyncio
    async def test_query_merges_and_tolerates_failures(self):
        pool = RelayPool()

        async def fetch_events(self, filters, *, timeout=5.0):
            if self.url == "wss://down.example":
                raise RelayError("Connection failed")
            return [event("a"), event(self.url)]

        with patch.object(NostrRelay, "fetch_events", fetch_events), patch.object(
            NostrRelay, "disconnect", AsyncMock()
        ):
            events = await pool.query_sync(
                ["wss://one.example", "wss://two.example", "wss://down.example"],
                {"kinds": [1059]},
            )

        assert sorted(e["id"] for e in events) == ["a", "wss://one.example", "wss://two.example"]
        assert pool.relays == {}

    @pytest.mark.asyncio
    async def test_publish_reports_each_relay(self):
        pool = RelayPool()

        async def publish_event(self, ev, *, timeout=10.0):
            if self.url == "wss://slow.example":
                raise RelayError("Timeout waiting for OK")
            return True, ""

        with patch.object(NostrRelay, "publish_event", publish_event), patch.object(
            NostrRelay, "disconnect", AsyncMock()
        ):
            outcomes = await pool.publish(["wss://one.example", "wss://slow.example"], event("a"))

        assert [(o.relay, o.ok) for o in outcomes] == [
            ("wss://one.example", True),
            ("wss://slow.example", False),
        ]

    @pytest.mark.asyncio
    async def test_publish_tolerates_dropped_connection(self):
        pool = RelayPool()

        async def publish_event(self, ev, *, timeout=10.0):
            if self.url == "wss://bad.example":
                raise websockets.exceptions.ConnectionClosedError(None, None)
            return True, ""

        with patch.object(NostrRelay, "publish_event", publish_event), patch.object(
            NostrRelay, "disconnect", AsyncMock()
        ):
            outcomes = await pool.publish(["wss://bad.example", "wss://good.example"], event("a"))

        assert [o.ok for o in outcomes] == [False, True]
        assert pool.relays == {}

    @pytest.mark.asyncio
    async def test_subscribe_failure_releases_connection(self):
        pool = RelayPool()
        with patch.object(
            NostrRelay, "subscribe", AsyncMock(side_effect=OSError("network unreachable"))
        ), patch.object(NostrRelay, "disconnect", AsyncMock()):
            subscription = await pool.subscribe(
                ["wss://one.example"], {"kinds": [1059]}, lambda e: None
            )

        assert subscription.sub_ids == {}
        assert pool.relays == {}
        assert pool._refs == {}

    @pytest.mark.asyncio
    async def test_connections_are_shared(self):
        pool = RelayPool()
        with patch.object(NostrRelay, "disconnect", AsyncMock()) as disconnect:
            first = pool.acquire("wss://one.example")
            second = pool.acquire("wss://one.example")
            assert first is second

            await pool.release("wss://one.example")
            disconnect.assert_not_called()
            await pool.release("wss://one.example")
            disconnect.assert_awaited_once()


class TestRelayConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("NOSTR_RELAYS", raising=False)
        assert get_relays_from_env() == DEFAULT_RELAYS

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("NOSTR_RELAYS", "wss://a.example, wss://b.example,,wss://a.example")
        assert get_relays_from_env() == ["wss://a.example", "wss://b.example"]
