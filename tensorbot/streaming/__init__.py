"""
Tensor transaction streaming.

Long-lived graphql-transport-ws subscription per process, with
per-slug subscriptions that survive reconnects and pattern-based fan-out
of decoded transactions to listeners.
"""

from .dispatcher import TRANSACTION, WILDCARD, EventDispatcher, patterns_for
from .events import Attribute, LastSale, MintFacts, Transaction, TxFacts, TxMetadata
from .registry import SubscriptionRegistry
from .session import HandshakeTimeoutError, SessionConnectError, TensorSession

__all__ = [
    # Events
    "Attribute",
    "LastSale",
    "MintFacts",
    "Transaction",
    "TxFacts",
    "TxMetadata",
    # Dispatch
    "TRANSACTION",
    "WILDCARD",
    "EventDispatcher",
    "patterns_for",
    # Registry
    "SubscriptionRegistry",
    # Session
    "HandshakeTimeoutError",
    "SessionConnectError",
    "TensorSession",
]
