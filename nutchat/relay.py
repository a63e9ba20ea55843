"""Nostr relay websocket client and a shared relay pool."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, TypedDict
from uuid import uuid4

import websockets
import websockets.exceptions

from .types import RelayError

logger = logging.getLogger(__name__)

RELAYS_ENV_VAR = "NOSTR_RELAYS"

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
]

# What a relay call may raise once it is past our own checks
_TRANSPORT_ERRORS = (RelayError, OSError, websockets.exceptions.WebSocketException)


# ──────────────────────────────────────────────────────────────────────────────
# Nostr protocol types
# ──────────────────────────────────────────────────────────────────────────────


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int
    # Tags filters use #<tag> format


EventCallback = Callable[[NostrEvent], None]


@dataclass
class PublishOutcome:
    """Result of publishing one event to one relay."""

    relay: str
    ok: bool
    message: str = ""


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Single relay connection.

    One background reader task dispatches every incoming frame, so queries,
    subscriptions and publishes can share the socket.
    """

    def __init__(self, url: str) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
        """
        self.url = url
        self.ws: Any = None
        self.subscriptions: dict[str, EventCallback] = {}
        self._eose: dict[str, asyncio.Future[None]] = {}
        self._pending_ok: dict[str, asyncio.Future[tuple[bool, str]]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the relay."""
        async with self._connect_lock:
            if self.connected:
                return
            try:
                async with asyncio.timeout(5.0):
                    self.ws = await websockets.connect(
                        self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                    )
            except TimeoutError as e:
                raise RelayError(f"Connection timeout: {self.url}") from e
            except (OSError, websockets.exceptions.WebSocketException) as e:
                raise RelayError(f"Connection failed: {self.url}: {e}") from e
            self._reader = asyncio.create_task(self._read_loop())

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if self.connected:
            await self.ws.close()
        self.ws = None
        self.subscriptions.clear()
        self._fail_pending(RelayError(f"Disconnected from {self.url}"))

    async def _send(self, message: list[Any]) -> None:
        """Send a message to the relay."""
        if not self.connected:
            raise RelayError("Not connected to relay")
        try:
            await self.ws.send(json.dumps(message))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayError(f"Send to {self.url} failed: {e}") from e

    def _fail_pending(self, error: Exception) -> None:
        for future in [*self._eose.values(), *self._pending_ok.values()]:
            if not future.done():
                future.set_exception(error)
        self._eose.clear()
        self._pending_ok.clear()

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.debug("Ignoring non-JSON frame from %s", self.url)
                    continue
                if isinstance(msg, list) and msg:
                    self._dispatch(msg)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Connection to %s closed", self.url)
        finally:
            self._fail_pending(RelayError(f"Connection to {self.url} closed"))

    def _dispatch(self, msg: list[Any]) -> None:
        kind = msg[0]
        if kind == "EVENT" and len(msg) >= 3:
            callback = self.subscriptions.get(msg[1])
            if callback is not None:
                try:
                    callback(msg[2])
                except Exception:
                    logger.exception("Event handler for %s failed", self.url)
        elif kind == "EOSE" and len(msg) >= 2:
            future = self._eose.pop(msg[1], None)
            if future is not None and not future.done():
                future.set_result(None)
        elif kind == "OK" and len(msg) >= 3:
            future = self._pending_ok.pop(msg[1], None)
            if future is not None and not future.done():
                future.set_result((bool(msg[2]), str(msg[3]) if len(msg) > 3 else ""))
        elif kind == "CLOSED" and len(msg) >= 2:
            logger.debug("Relay %s closed subscription %s: %s", self.url, msg[1], msg[2:])
            self.subscriptions.pop(msg[1], None)
            future = self._eose.pop(msg[1], None)
            if future is not None and not future.done():
                future.set_result(None)
        elif kind == "NOTICE":
            logger.info("Relay notice from %s: %s", self.url, msg[1:])

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent, *, timeout: float = 10.0) -> tuple[bool, str]:
        """Publish an event to the relay.

        Returns:
            ``(accepted, message)`` as reported by the relay's OK frame
        """
        await self.connect()
        future: asyncio.Future[tuple[bool, str]] = asyncio.get_running_loop().create_future()
        self._pending_ok[event["id"]] = future
        try:
            await self._send(["EVENT", event])
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError as e:
            raise RelayError(f"Timeout waiting for OK from {self.url}") from e
        finally:
            self._pending_ok.pop(event["id"], None)

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(
        self,
        filters: list[NostrFilter],
        *,
        timeout: float = 5.0,
    ) -> list[NostrEvent]:
        """Fetch stored events matching filters, until EOSE or ``timeout``."""
        events: list[NostrEvent] = []
        sub_id = await self.subscribe(filters, events.append)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._eose[sub_id] = future
        try:
            async with asyncio.timeout(timeout):
                await future
        except TimeoutError:
            pass
        finally:
            self._eose.pop(sub_id, None)
            await self.unsubscribe(sub_id)
        return events

    # ───────────────────────── Subscription Management ─────────────────────────────

    async def subscribe(self, filters: list[NostrFilter], callback: EventCallback) -> str:
        """Subscribe to events matching filters.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        await self.connect()
        sub_id = uuid4().hex[:16]
        self.subscriptions[sub_id] = callback
        await self._send(["REQ", sub_id, *filters])
        return sub_id

    async def unsubscribe(self, sub_id: str) -> None:
        """Close a subscription."""
        if self.subscriptions.pop(sub_id, None) is not None and self.connected:
            await self._send(["CLOSE", sub_id])


# ──────────────────────────────────────────────────────────────────────────────
# Relay pool
# ──────────────────────────────────────────────────────────────────────────────


class SubscriptionHandle(Protocol):
    async def close(self) -> None: ...


class RelayPoolProtocol(Protocol):
    async def query_sync(
        self, relays: list[str], filter: NostrFilter, *, max_wait: float = 5.0
    ) -> list[NostrEvent]: ...

    async def subscribe(
        self, relays: list[str], filter: NostrFilter, on_event: EventCallback
    ) -> SubscriptionHandle: ...

    async def publish(self, relays: list[str], event: NostrEvent) -> list[PublishOutcome]: ...


@dataclass
class PoolSubscription:
    """Live subscription spanning several relays."""

    pool: RelayPool
    on_event: EventCallback
    sub_ids: dict[str, str] = field(default_factory=dict)  # relay url -> sub id
    seen: set[str] = field(default_factory=set)
    closed: bool = False

    def _deliver(self, event: NostrEvent) -> None:
        if self.closed:
            return
        event_id = event.get("id") if isinstance(event, dict) else None
        if not event_id or event_id in self.seen:
            return
        self.seen.add(event_id)
        self.on_event(event)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for url, sub_id in self.sub_ids.items():
            relay = self.pool.relays.get(url)
            try:
                if relay is not None:
                    await relay.unsubscribe(sub_id)
            except _TRANSPORT_ERRORS as e:
                logger.debug("Unsubscribe from %s failed: %s", url, e)
            finally:
                await self.pool.release(url)
        self.sub_ids.clear()


class RelayPool:
    """Relay connections shared by every conversation and query.

    Connections are reference counted and closed once nothing uses them.
    """

    def __init__(self) -> None:
        self.relays: dict[str, NostrRelay] = {}
        self._refs: dict[str, int] = {}

    def acquire(self, url: str) -> NostrRelay:
        relay = self.relays.get(url)
        if relay is None:
            relay = self.relays[url] = NostrRelay(url)
        self._refs[url] = self._refs.get(url, 0) + 1
        return relay

    async def release(self, url: str) -> None:
        refs = self._refs.get(url, 0) - 1
        if refs > 0:
            self._refs[url] = refs
            return
        self._refs.pop(url, None)
        relay = self.relays.pop(url, None)
        if relay is not None:
            await relay.disconnect()

    async def query_sync(
        self, relays: list[str], filter: NostrFilter, *, max_wait: float = 5.0
    ) -> list[NostrEvent]:
        """Stored events from all relays, deduplicated by id.

        A relay that fails simply contributes nothing.
        """

        async def fetch(url: str) -> list[NostrEvent]:
            relay = self.acquire(url)
            try:
                return await relay.fetch_events([filter], timeout=max_wait)
            except _TRANSPORT_ERRORS as e:
                logger.warning("Query to %s failed: %s", url, e)
                return []
            finally:
                await self.release(url)

        results = await asyncio.gather(*(fetch(url) for url in relays))
        events: dict[str, NostrEvent] = {}
        for batch in results:
            for event in batch:
                if isinstance(event, dict) and event.get("id"):
                    events.setdefault(event["id"], event)
        return list(events.values())

    async def subscribe(
        self, relays: list[str], filter: NostrFilter, on_event: EventCallback
    ) -> PoolSubscription:
        """Live subscription on every reachable relay."""
        subscription = PoolSubscription(pool=self, on_event=on_event)
        for url in relays:
            relay = self.acquire(url)
            try:
                subscription.sub_ids[url] = await relay.subscribe(
                    [filter], subscription._deliver
                )
            except _TRANSPORT_ERRORS as e:
                logger.warning("Subscribe to %s failed: %s", url, e)
                await self.release(url)
        return subscription

    async def publish(self, relays: list[str], event: NostrEvent) -> list[PublishOutcome]:
        """Publish to every relay concurrently and report each outcome."""

        async def send(url: str) -> PublishOutcome:
            relay = self.acquire(url)
            try:
                ok, message = await relay.publish_event(event)
                return PublishOutcome(relay=url, ok=ok, message=message)
            except _TRANSPORT_ERRORS as e:
                return PublishOutcome(relay=url, ok=False, message=str(e))
            finally:
                await self.release(url)

        return list(await asyncio.gather(*(send(url) for url in relays)))

    async def close(self) -> None:
        for relay in list(self.relays.values()):
            await relay.disconnect()
        self.relays.clear()
        self._refs.clear()


def get_relays_from_env() -> list[str]:
    """Relay URLs from ``NOSTR_RELAYS`` (comma-separated), else the defaults."""
    env_relays = os.getenv(RELAYS_ENV_VAR, "").strip().strip("\"'")
    if env_relays:
        relays = [relay.strip() for relay in env_relays.split(",")]
        # Filter out empty strings and remove duplicates while preserving order
        relays = list(dict.fromkeys(relay for relay in relays if relay))
        if relays:
            return relays
    return list(DEFAULT_RELAYS)
