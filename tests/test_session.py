"""
Tests for the Tensor subscription session.

The WebSocket is replaced by an in-memory fake injected through
connect_factory, so these run without network access.

Tests:
- Handshake and connect() semantics
- Idempotent and forced subscription
- Replay on reconnect
- Inbound routing, unknown ids, malformed frames
- Keep-alive, watchdog, stop
"""

import asyncio
import json
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from tensorbot.streaming.events import Transaction
from tensorbot.streaming.session import (
    HandshakeTimeoutError,
    SessionConnectError,
    TensorSession,
)

from conftest import make_tx_payload

_CLOSED = object()


class FakeWebSocket:
    """Minimal stand-in for a websockets ClientConnection."""

    def __init__(self):
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def feed(self, frame) -> None:
        """Queue an inbound frame (dict is JSON-encoded, str/bytes passed as-is)."""
        if not isinstance(frame, (str, bytes)):
            frame = json.dumps(frame)
        self.inbox.put_nowait(frame)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)

    def frames(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f.get("type") == frame_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Callable with the websockets.connect() shape; records every attempt."""

    def __init__(self, failures: Optional[list[Exception]] = None):
        self.failures = list(failures or [])
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeWebSocket] = []

    def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        return _FakeConnection(self)


class _FakeConnection:
    def __init__(self, connector: FakeConnector):
        self.connector = connector
        self.ws: Optional[FakeWebSocket] = None

    async def __aenter__(self) -> FakeWebSocket:
        if self.connector.failures:
            raise self.connector.failures.pop(0)
        self.ws = FakeWebSocket()
        self.connector.sockets.append(self.ws)
        return self.ws

    async def __aexit__(self, *exc) -> None:
        if self.ws is not None:
            await self.ws.close()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.001)


def make_session(connector: FakeConnector, **overrides) -> TensorSession:
    options = dict(
        keepalive_interval=3600,
        handshake_timeout=1.0,
        reconnect_delay=0,
        max_reconnect_delay=0,
        stale_threshold=0,
        connect_factory=connector,
    )
    options.update(overrides)
    return TensorSession("https://api.tensor.so/graphql", "test-key", **options)


async def open_session(connector: FakeConnector, **overrides) -> tuple[TensorSession, FakeWebSocket]:
    """Connect and complete the handshake on the first socket."""
    session = make_session(connector, **overrides)
    connecting = asyncio.create_task(session.connect())
    await wait_until(lambda: connector.sockets and connector.sockets[-1].sent)
    ws = connector.sockets[-1]
    ws.feed({"type": "connection_ack"})
    await asyncio.wait_for(connecting, timeout=1)
    return session, ws


def next_frame(sub_id: str, payload: dict) -> dict:
    return {"id": sub_id, "type": "next", "payload": {"data": {"newTransactionTV2": payload}}}


class TestConnect:
    """connect() resolves on connection_ack."""

    @pytest.mark.asyncio
    async def test_handshake(self):
        connector = FakeConnector()
        session = make_session(connector)

        connecting = asyncio.create_task(session.connect())
        await wait_until(lambda: connector.sockets and connector.sockets[0].sent)
        ws = connector.sockets[0]

        url, kwargs = connector.calls[0]
        assert url == "wss://api.tensor.so/graphql"
        assert kwargs["subprotocols"] == ["graphql-transport-ws"]
        assert kwargs["additional_headers"] == {"X-TENSOR-API-KEY": "test-key"}
        assert ws.sent == [{"type": "connection_init"}]
        assert session.connected is True

        await asyncio.sleep(0.01)
        assert not connecting.done()

        ws.feed({"type": "connection_ack"})
        await asyncio.wait_for(connecting, timeout=1)

        await session.stop()
        assert session.connected is False

    @pytest.mark.asyncio
    async def test_connect_again_reuses_connection(self):
        connector = FakeConnector()
        session, _ = await open_session(connector)

        await asyncio.wait_for(session.connect(), timeout=1)

        assert len(connector.sockets) == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_first_attempt_failure_is_raised(self):
        connector = FakeConnector(failures=[OSError("connection refused")])
        session = make_session(connector)

        with pytest.raises(SessionConnectError) as exc_info:
            await session.connect()

        assert isinstance(exc_info.value.__cause__, OSError)
        assert session.running is False
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_handshake_timeout(self):
        connector = FakeConnector()
        session = make_session(connector, handshake_timeout=0.05)

        with pytest.raises(HandshakeTimeoutError):
            await session.connect()

        assert session.running is False
        assert connector.sockets[0].closed is True


class TestSubscribe:
    """Subscriptions are idempotent unless forced."""

    @pytest.mark.asyncio
    async def test_subscribe_twice_sends_one_frame(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)

        first = await session.subscribe("slugA")
        second = await session.subscribe("slugA")

        frames = ws.frames("subscribe")
        assert len(frames) == 1
        assert first == second == frames[0]["id"]
        assert frames[0]["payload"]["variables"] == {"slug": "slugA"}
        assert frames[0]["payload"]["operationName"] == "NewTransaction"
        assert len(session.registry) == 1

        await session.stop()

    @pytest.mark.asyncio
    async def test_forced_subscribe_replaces_id(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)

        old_id = await session.subscribe("slugA")
        new_id = await session.subscribe("slugA", force=True)

        frames = ws.frames("subscribe")
        assert len(frames) == 2
        assert new_id != old_id
        assert frames[1]["id"] == new_id
        assert session.registry.get("slugA") == new_id
        assert session.registry.resolve(old_id) is None

        await session.stop()

    @pytest.mark.asyncio
    async def test_subscribe_before_connect_is_sent_after_ack(self):
        connector = FakeConnector()
        session = make_session(connector)

        early_id = await session.subscribe("slugA")
        assert "slugA" in session.registry

        connecting = asyncio.create_task(session.connect())
        await wait_until(lambda: connector.sockets and connector.sockets[0].sent)
        ws = connector.sockets[0]
        assert ws.frames("subscribe") == []

        ws.feed({"type": "connection_ack"})
        await asyncio.wait_for(connecting, timeout=1)
        await wait_until(lambda: ws.frames("subscribe"))

        frame = ws.frames("subscribe")[0]
        assert frame["payload"]["variables"] == {"slug": "slugA"}
        assert frame["id"] != early_id

        await session.stop()

    @pytest.mark.asyncio
    async def test_send_while_disconnected_is_dropped(self):
        session = make_session(FakeConnector())
        assert await session.send({"type": "ping"}) is False


class TestReconnect:
    """Dropped connections are re-established and subscriptions replayed."""

    @pytest.mark.asyncio
    async def test_replays_each_topic_with_fresh_id(self):
        connector = FakeConnector()
        session, ws1 = await open_session(connector)
        old_a = await session.subscribe("A")
        old_b = await session.subscribe("B")

        await ws1.close()
        await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)
        ws2 = connector.sockets[1]

        # Nothing but the init frame until the server acknowledges
        assert ws2.sent == [{"type": "connection_init"}]

        ws2.feed({"type": "connection_ack"})
        await wait_until(lambda: len(ws2.frames("subscribe")) == 2)

        replayed = {f["payload"]["variables"]["slug"]: f["id"] for f in ws2.frames("subscribe")}
        assert set(replayed) == {"A", "B"}
        assert replayed["A"] != old_a
        assert replayed["B"] != old_b
        assert session.registry.get("A") == replayed["A"]
        assert session.registry.resolve(old_a) is None
        assert session.stats["reconnects"] == 1

        await session.stop()

    @pytest.mark.asyncio
    async def test_subscribe_between_open_and_ack_waits_for_ack(self):
        connector = FakeConnector()
        session, ws1 = await open_session(connector)
        await session.subscribe("A")

        await ws1.close()
        await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)
        ws2 = connector.sockets[1]
        assert session.connected is True
        assert session.acknowledged is False

        await session.subscribe("B")
        assert ws2.sent == [{"type": "connection_init"}]

        ws2.feed({"type": "connection_ack"})
        await wait_until(lambda: len(ws2.frames("subscribe")) == 2)

        replayed = {f["payload"]["variables"]["slug"]: f["id"] for f in ws2.frames("subscribe")}
        assert set(replayed) == {"A", "B"}
        assert session.registry.get("B") == replayed["B"]

        await session.stop()

    @pytest.mark.asyncio
    async def test_event_with_old_id_is_dropped_after_replay(self):
        connector = FakeConnector()
        session, ws1 = await open_session(connector)
        old_id = await session.subscribe("A")
        received = []
        session.on("transaction", lambda tx, slug: received.append(slug))

        await ws1.close()
        await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)
        ws2 = connector.sockets[1]
        ws2.feed({"type": "connection_ack"})
        await wait_until(lambda: ws2.frames("subscribe"))

        ws2.feed(next_frame(old_id, make_tx_payload()))
        await wait_until(lambda: session.stats["dropped"] == 1)

        assert received == []
        await session.stop()

    @pytest.mark.asyncio
    async def test_stop_prevents_reconnect(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)

        await session.stop()
        await asyncio.sleep(0.01)

        assert ws.closed is True
        assert len(connector.sockets) == 1
        assert session.running is False


class TestInbound:
    """Inbound frames are parsed and routed."""

    @pytest.mark.asyncio
    async def test_transaction_reaches_listener_with_topic(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        sub_id = await session.subscribe("slugA")
        received = []
        session.on("TENSORSWAP:SALE_BUY_NOW", lambda tx, slug: received.append((tx, slug)))

        ws.feed(next_frame(sub_id, make_tx_payload()))
        await wait_until(lambda: received)

        tx, slug = received[0]
        assert slug == "slugA"
        assert tx.mint.name == "Test NFT #42"
        assert session.stats["transactions"] == 1

        await session.stop()

    @pytest.mark.asyncio
    async def test_unknown_id_invokes_no_listener(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        await session.subscribe("slugA")
        received = []
        session.on("transaction", lambda tx, slug: received.append(slug))

        ws.feed(next_frame("not-a-subscription", make_tx_payload()))
        await wait_until(lambda: session.stats["dropped"] == 1)

        assert received == []
        await session.stop()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        sub_id = await session.subscribe("slugA")
        received = []
        session.on("transaction", lambda tx, slug: received.append(slug))

        ws.feed("{not json")
        ws.feed("[1, 2, 3]")
        ws.feed(next_frame(sub_id, make_tx_payload()))
        await wait_until(lambda: received)

        assert session.stats["malformed"] == 2
        assert session.connected is True
        await session.stop()

    @pytest.mark.asyncio
    async def test_odd_fields_do_not_recycle_connection(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        sub_id = await session.subscribe("slugA")
        received = []
        session.on("transaction", lambda tx, slug: received.append(tx))

        infinite = make_tx_payload(gross_amount="1e400")
        bad_attributes = make_tx_payload()
        bad_attributes["mint"]["attributes"] = 5
        ws.feed(next_frame(sub_id, infinite))
        ws.feed(next_frame(sub_id, bad_attributes))
        ws.feed(next_frame([sub_id], make_tx_payload()))
        ws.feed({"id": {"nested": sub_id}, "type": "error", "payload": []})
        ws.feed(next_frame(sub_id, make_tx_payload()))
        await wait_until(lambda: len(received) == 3)

        assert received[0].tx.gross_amount is None
        assert received[1].mint.attributes == ()
        assert received[2].tx.gross_amount == 12_500_000_000
        assert session.stats["dropped"] == 1
        assert session.stats["errors"] == 0
        assert len(connector.sockets) == 1
        assert session.connected is True
        await session.stop()

    @pytest.mark.asyncio
    async def test_undecodable_transaction_is_skipped(self, monkeypatch):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        sub_id = await session.subscribe("slugA")
        received = []
        session.on("transaction", lambda tx, slug: received.append(slug))

        real_from_dict = Transaction.from_dict.__func__

        def from_dict(cls, data):
            if data.get("broken"):
                raise RuntimeError("cannot decode")
            return real_from_dict(cls, data)

        monkeypatch.setattr(Transaction, "from_dict", classmethod(from_dict))

        ws.feed(next_frame(sub_id, {"broken": True}))
        ws.feed(next_frame(sub_id, make_tx_payload()))
        await wait_until(lambda: received)

        assert session.stats["malformed"] == 1
        assert session.stats["transactions"] == 1
        assert len(connector.sockets) == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_pong_ignored_and_ping_answered(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)

        ws.feed({"type": "pong"})
        ws.feed({"type": "ping"})
        await wait_until(lambda: ws.frames("pong"))

        assert ws.frames("pong") == [{"type": "pong"}]
        await session.stop()

    @pytest.mark.asyncio
    async def test_frames_without_transaction_are_ignored(self):
        connector = FakeConnector()
        session, ws = await open_session(connector)
        sub_id = await session.subscribe("slugA")
        received = []
        session.on("transaction", lambda tx, slug: received.append(slug))

        ws.feed({"id": sub_id, "type": "next", "payload": {"data": {"somethingElse": {}}}})
        ws.feed({"id": sub_id, "type": "error", "payload": [{"message": "bad slug"}]})
        ws.feed({"id": sub_id, "type": "complete"})
        await wait_until(lambda: session.stats["messages_received"] >= 4)

        assert received == []
        assert session.stats["dropped"] == 0
        await session.stop()


class TestHealth:
    """Keep-alive pings and the stale-connection watchdog."""

    @pytest.mark.asyncio
    async def test_keepalive_ping(self):
        connector = FakeConnector()
        session, ws = await open_session(connector, keepalive_interval=0.01)

        await wait_until(lambda: len(ws.frames("ping")) >= 2)

        await session.stop()

    @pytest.mark.asyncio
    async def test_stale_connection_is_recycled(self):
        connector = FakeConnector()
        session, ws = await open_session(connector, stale_threshold=0.05)

        await wait_until(lambda: len(connector.sockets) >= 2)

        assert ws.closed is True
        await session.stop()


class TestStats:
    @pytest.mark.asyncio
    async def test_fetch_stats_delegates_to_client(self):
        stats_client = AsyncMock()
        stats_client.get_collection_stats.return_value = {"numMints": 5000}
        session = make_session(FakeConnector(), stats_client=stats_client)

        assert await session.fetch_stats("slugA") == {"numMints": 5000}
        stats_client.get_collection_stats.assert_awaited_once_with("slugA")

    def test_get_stats_before_connect(self):
        stats = make_session(FakeConnector()).get_stats()
        assert stats["connected"] is False
        assert stats["subscriptions"] == 0
        assert stats["last_message"] is None
