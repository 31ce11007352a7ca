"""
Transaction event dispatcher.

Listeners register against pattern strings; each decoded transaction is
offered to these patterns, in this order:

1. "transaction"          - every transaction
2. "{source}:{tx_type}"   - exact marketplace and type
3. "{source}:*"           - any type from a marketplace
4. "*:{tx_type}"          - a type from any marketplace
5. "{tx_type}"            - bare type (legacy form)

Only patterns with at least one listener are invoked. Listeners may be plain
functions or coroutine functions; coroutines are scheduled as tasks and not
awaited, so a slow listener never blocks frame processing.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Awaitable, Callable, Optional, Union

import structlog

from .events import Transaction

logger = structlog.get_logger()

TRANSACTION = "transaction"
WILDCARD = "*"

Listener = Callable[[Transaction, str], Union[None, Awaitable[None]]]


def patterns_for(source: str, tx_type: str) -> list[str]:
    """Patterns a transaction with this source and type is offered to, in order."""
    return [
        TRANSACTION,
        f"{source}:{tx_type}",
        f"{source}:{WILDCARD}",
        f"{WILDCARD}:{tx_type}",
        tx_type,
    ]


class EventDispatcher:
    """Pattern-keyed listener registry with ordered fan-out."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()
        self.stats = {
            "dispatched": 0,
            "invocations": 0,
            "listener_errors": 0,
        }

    def on(self, pattern: str, listener: Optional[Listener] = None):
        """
        Register listener for pattern.

        Can also be used as a decorator:

            @dispatcher.on("*:SALE_BUY_NOW")
            async def handle(tx, slug): ...
        """
        if listener is None:
            def decorator(fn: Listener) -> Listener:
                self._listeners[pattern].append(fn)
                return fn
            return decorator

        self._listeners[pattern].append(listener)
        return listener

    def off(self, pattern: str, listener: Listener) -> bool:
        """Remove one registration of listener. Returns True if it was registered."""
        listeners = self._listeners.get(pattern)
        if not listeners:
            return False
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        if not listeners:
            del self._listeners[pattern]
        return True

    def listener_count(self, pattern: str) -> int:
        return len(self._listeners.get(pattern, ()))

    def has_listeners(self, pattern: str) -> bool:
        return self.listener_count(pattern) > 0

    def dispatch(self, transaction: Transaction, slug: str) -> int:
        """
        Offer transaction to every matching pattern.

        Args:
            transaction: Decoded transaction
            slug: Collection slug the transaction's subscription belongs to

        Returns:
            Number of listeners invoked
        """
        self.stats["dispatched"] += 1
        invoked = 0

        for pattern in patterns_for(transaction.source, transaction.tx_type):
            if not self.has_listeners(pattern):
                continue
            # Copy so listeners can unregister themselves mid-dispatch
            for listener in list(self._listeners[pattern]):
                self._invoke(listener, pattern, transaction, slug)
                invoked += 1

        self.stats["invocations"] += invoked
        return invoked

    def _invoke(self, listener: Listener, pattern: str, transaction: Transaction, slug: str) -> None:
        try:
            result = listener(transaction, slug)
        except Exception as e:
            self.stats["listener_errors"] += 1
            logger.error(
                "Listener failed",
                pattern=pattern,
                listener=getattr(listener, "__qualname__", repr(listener)),
                error=str(e),
                exc_info=True,
            )
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(lambda t: self._on_task_done(t, pattern))

    def _on_task_done(self, task: asyncio.Task, pattern: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.stats["listener_errors"] += 1
            logger.error(
                "Async listener failed",
                pattern=pattern,
                error=str(error),
                exc_info=error,
            )

    @property
    def pending(self) -> int:
        """Number of async listener tasks still running."""
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight async listeners to finish."""
        if not self._pending:
            return
        _, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_pending:
            logger.warning("Listeners still running after drain", count=len(still_pending))

    def clear(self) -> None:
        """Drop every registration."""
        self._listeners.clear()
