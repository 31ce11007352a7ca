"""
Tensor subscription session.

Owns the single WebSocket connection to Tensor's GraphQL endpoint:
- Opens the connection with the API key header and graphql-transport-ws
- Sends connection_init and waits for connection_ack
- Pings every keepalive_interval seconds
- Replays every known slug subscription (with a fresh id) after each ack
- Decodes newTransactionTV2 frames and hands them to the dispatcher
- Reconnects with exponential backoff until stop() is called
"""
import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from tensorbot.config.settings import settings

from . import protocol
from .dispatcher import EventDispatcher, Listener
from .events import Transaction
from .registry import SubscriptionRegistry

logger = structlog.get_logger()

# Upper bound on how often the watchdog wakes up
HEALTH_CHECK_INTERVAL_SECONDS = 30


class SessionConnectError(ConnectionError):
    """The first connection attempt failed before any handshake succeeded."""
    pass


class HandshakeTimeoutError(SessionConnectError):
    """connection_ack did not arrive within handshake_timeout."""
    pass


class TensorSession:
    """
    One logical subscription connection to Tensor.

    Lifecycle: connecting -> open -> closed -> connecting (retry), until stop().
    All state is mutated from the event loop only, one frame at a time.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        registry: Optional[SubscriptionRegistry] = None,
        stats_client: Any = None,
        keepalive_interval: Optional[float] = None,
        handshake_timeout: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        stale_threshold: Optional[float] = None,
        connect_factory: Callable[..., Any] = connect,
    ):
        """
        Initialize the session. Nothing is opened until connect().

        Args:
            url: HTTP(S) GraphQL endpoint; the ws(s) URL is derived from it
            api_key: Tensor API key sent as X-TENSOR-API-KEY
            dispatcher: Listener registry (a fresh one if None)
            registry: Subscription registry (a fresh one if None)
            stats_client: Object with async get_collection_stats(slug), used by fetch_stats()
            keepalive_interval: Seconds between ping frames
            handshake_timeout: Seconds connect() waits for connection_ack (0 = forever)
            reconnect_delay: Initial reconnect delay in seconds
            max_reconnect_delay: Backoff ceiling in seconds
            stale_threshold: Force reconnect after this many silent seconds (0 = off)
            connect_factory: websockets-compatible connect()
        """
        self.url = url or settings.tensor_api_url
        self.ws_url = re.sub(r"^http", "ws", self.url)
        self.api_key = api_key if api_key is not None else settings.tensor_api_key

        self.dispatcher = dispatcher or EventDispatcher()
        self.registry = registry or SubscriptionRegistry()
        self.stats_client = stats_client

        self.keepalive_interval = _pick(keepalive_interval, settings.keepalive_interval)
        self.handshake_timeout = _pick(handshake_timeout, settings.handshake_timeout) or None
        self.initial_reconnect_delay = _pick(reconnect_delay, settings.reconnect_delay)
        self.max_reconnect_delay = _pick(max_reconnect_delay, settings.max_reconnect_delay)
        self.stale_threshold = _pick(stale_threshold, settings.stale_threshold) or None
        self.reconnect_delay = self.initial_reconnect_delay
        self._connect = connect_factory

        self.ws: Optional[ClientConnection] = None
        self.connected = False
        # Set on connection_ack; subscribe frames are only sent while True
        self.acknowledged = False
        self.running = False
        self._run_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._health_check_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None

        # Stats
        self.stats = {
            "messages_received": 0,
            "transactions": 0,
            "dropped": 0,
            "malformed": 0,
            "errors": 0,
            "reconnects": 0,
        }
        self.last_activity: Optional[datetime] = None

    # === Lifecycle ===

    async def connect(self) -> None:
        """
        Start the connection loop and wait for the first connection_ack.

        Safe to call repeatedly: while the loop is running this only waits for
        (or returns after) the same acknowledgment.

        Raises:
            SessionConnectError: The first attempt failed before any ack
            HandshakeTimeoutError: No ack within handshake_timeout
        """
        if self._run_task is None or self._run_task.done():
            self._ready = asyncio.get_running_loop().create_future()
            self.running = True
            self.reconnect_delay = self.initial_reconnect_delay
            self._run_task = asyncio.create_task(self._run(), name="tensor-session")

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            logger.error("Timed out waiting for connection_ack", timeout=self.handshake_timeout)
            await self.stop()
            raise HandshakeTimeoutError(
                f"No connection_ack from {self.ws_url} within {self.handshake_timeout}s"
            )

    async def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        self.running = False
        task = self._run_task
        if task is not None and not task.done():
            logger.info("Stopping Tensor session")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

    async def _run(self) -> None:
        """Connect, run until the connection drops, back off, repeat."""
        logger.info("Tensor session starting", url=self.ws_url)

        while self.running:
            try:
                await self._connect_and_run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["errors"] += 1
                if self._ready is not None and not self._ready.done():
                    # Never connected: surface to the connect() caller instead of retrying
                    logger.error("Initial Tensor connection failed", error=str(e), error_type=type(e).__name__)
                    error = SessionConnectError(f"Could not connect to {self.ws_url}: {e}")
                    error.__cause__ = e
                    self._ready.set_exception(error)
                    self.running = False
                    break
                if isinstance(e, ConnectionClosed):
                    logger.warning("Tensor connection closed", code=_close_code(e), reason=_close_reason(e))
                else:
                    logger.error("Tensor connection error", error=str(e), error_type=type(e).__name__)

            if self.running:
                self.stats["reconnects"] += 1
                logger.info("Reconnecting to Tensor", delay=self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
                self.reconnect_delay = min(
                    self.reconnect_delay * 1.5,
                    self.max_reconnect_delay,
                )

    async def _connect_and_run(self) -> None:
        """Open one connection, handshake, and process frames until it closes."""
        async with self._connect(
            self.ws_url,
            subprotocols=[protocol.GRAPHQL_TRANSPORT_WS],
            additional_headers={protocol.API_KEY_HEADER: self.api_key},
            ping_interval=None,  # Keep-alive is the application-level ping below
        ) as ws:
            self.ws = ws
            self.connected = True
            self.acknowledged = False
            self.last_activity = datetime.now(timezone.utc)
            logger.info("Connected to Tensor")

            self._keepalive_task = asyncio.create_task(self._keepalive_loop())
            if self.stale_threshold:
                self._health_check_task = asyncio.create_task(self._health_check_loop())

            try:
                await self.send(protocol.connection_init())

                async for message in ws:
                    await self._handle_message(message)
            finally:
                self.connected = False
                self.acknowledged = False
                self.ws = None
                await _cancel(self._keepalive_task)
                await _cancel(self._health_check_task)
                self._keepalive_task = None
                self._health_check_task = None
                logger.warning("Disconnected from Tensor")

    async def _keepalive_loop(self) -> None:
        """Send a ping frame every keepalive_interval seconds."""
        while True:
            await asyncio.sleep(self.keepalive_interval)
            await self.send(protocol.ping())

    async def _health_check_loop(self) -> None:
        """Close the connection if nothing (not even a pong) arrived for stale_threshold seconds."""
        interval = min(HEALTH_CHECK_INTERVAL_SECONDS, self.stale_threshold / 2)
        while True:
            await asyncio.sleep(interval)
            silent_for = (datetime.now(timezone.utc) - self.last_activity).total_seconds()
            if silent_for > self.stale_threshold:
                logger.warning(
                    "Tensor connection stale, forcing reconnect",
                    seconds_since_activity=int(silent_for),
                    threshold=self.stale_threshold,
                )
                if self.ws is not None:
                    await self.ws.close()
                return

    # === Outbound ===

    async def send(self, frame: dict) -> bool:
        """
        Send a frame if connected.

        Returns:
            True if handed to the transport, False if dropped
        """
        if not self.connected or self.ws is None:
            logger.warning("Not connected to Tensor, dropping frame", frame_type=frame.get("type"))
            return False

        try:
            await self.ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            logger.warning("Send failed, connection closed", frame_type=frame.get("type"), code=_close_code(e))
            return False
        return True

    async def subscribe(self, slug: str, force: bool = False) -> str:
        """
        Subscribe to new transactions for a collection slug.

        Without force, a slug that is already subscribed is left alone. With
        force (used when replaying after reconnect), a fresh id replaces the
        old one and a new subscribe frame is sent.

        Before connection_ack the slug is only registered; the replay that
        follows the ack sends its frame.

        Returns:
            The slug's current subscription id
        """
        if slug in self.registry and not force:
            logger.debug("Already subscribed", slug=slug)
            return self.registry.get(slug)

        subscription_id = self.registry.register(slug)
        if not self.acknowledged:
            logger.info("Handshake pending, subscription deferred", slug=slug)
            return subscription_id

        logger.info("Subscribing to slug", slug=slug, id=subscription_id)
        await self.send(protocol.subscribe_frame(subscription_id, slug))
        return subscription_id

    # === Inbound ===

    async def _handle_message(self, message: str | bytes) -> None:
        """Parse one frame and route it by type."""
        self.stats["messages_received"] += 1
        self.last_activity = datetime.now(timezone.utc)

        try:
            data = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.stats["malformed"] += 1
            logger.warning("Invalid JSON frame", preview=str(message)[:100] if message else "empty")
            return

        if not isinstance(data, dict):
            self.stats["malformed"] += 1
            logger.warning("Skipping non-object frame", data_type=type(data).__name__)
            return

        frame_type = data.get("type")

        if frame_type == protocol.PONG:
            return
        if frame_type == protocol.PING:
            await self.send(protocol.pong())
            return
        if frame_type == protocol.CONNECTION_ACK:
            await self._on_connection_ack()
            return

        raw_tx = protocol.extract_transaction(data)
        if raw_tx:
            self._handle_transaction(data.get("id"), raw_tx)
        elif frame_type == protocol.ERROR:
            logger.warning(
                "Subscription error",
                id=data.get("id"),
                slug=self.registry.resolve(data.get("id")),
                payload=data.get("payload"),
            )
        elif frame_type == protocol.COMPLETE:
            logger.info(
                "Subscription completed by server",
                id=data.get("id"),
                slug=self.registry.resolve(data.get("id")),
            )

    async def _on_connection_ack(self) -> None:
        """Handshake done: release connect() and replay every subscription."""
        self.reconnect_delay = self.initial_reconnect_delay
        self.acknowledged = True

        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

        topics = self.registry.topics()
        logger.info("Tensor handshake acknowledged", resubscribing=len(topics))
        for slug in topics:
            await self.subscribe(slug, force=True)

    def _handle_transaction(self, subscription_id: Any, raw_tx: Any) -> None:
        slug = self.registry.resolve(subscription_id)
        if slug is None:
            self.stats["dropped"] += 1
            logger.warning("Dropping transaction for unknown subscription", id=repr(subscription_id)[:100])
            return

        if not isinstance(raw_tx, dict):
            self.stats["malformed"] += 1
            logger.warning("Transaction payload is not an object", id=subscription_id, slug=slug)
            return

        try:
            transaction = Transaction.from_dict(raw_tx)
        except Exception as e:
            self.stats["malformed"] += 1
            logger.warning(
                "Could not decode transaction",
                id=subscription_id,
                slug=slug,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        self.stats["transactions"] += 1
        logger.debug(
            "Transaction received",
            slug=slug,
            source=transaction.source,
            tx_type=transaction.tx_type,
            tx_id=transaction.tx.tx_id,
        )
        self.dispatcher.dispatch(transaction, slug)

    # === Listener and stats passthroughs ===

    def on(self, pattern: str, listener: Optional[Listener] = None):
        """Register a transaction listener (see EventDispatcher.on)."""
        return self.dispatcher.on(pattern, listener)

    def off(self, pattern: str, listener: Listener) -> bool:
        return self.dispatcher.off(pattern, listener)

    async def fetch_stats(self, slug: str) -> dict:
        """Current collection stats for slug, served from cache when fresh."""
        if self.stats_client is None:
            raise RuntimeError("TensorSession was created without a stats client")
        return await self.stats_client.get_collection_stats(slug)

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            "connected": self.connected,
            "subscriptions": len(self.registry),
            "messages_received": self.stats["messages_received"],
            "transactions": self.stats["transactions"],
            "dropped": self.stats["dropped"],
            "malformed": self.stats["malformed"],
            "errors": self.stats["errors"],
            "reconnects": self.stats["reconnects"],
            "last_message": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
        }


def _pick(value: Optional[float], default: float) -> float:
    return default if value is None else value


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def _close_code(error: ConnectionClosed) -> Optional[int]:
    frame = error.rcvd or error.sent
    return frame.code if frame else None


def _close_reason(error: ConnectionClosed) -> str:
    frame = error.rcvd or error.sent
    return frame.reason if frame else ""
