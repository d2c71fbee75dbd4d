"""Tracked-item state: reconciliation store, durable stores and change feeds."""

from betwatch.store.durable import (
    BetRepository,
    MemoryBetRepository,
    SupabaseBetRepository,
)
from betwatch.store.events import (
    ChangeEvent,
    ChangeFeed,
    ChangeOp,
    MemoryChangeFeed,
    Subscription,
)
from betwatch.store.realtime import SupabaseChangeFeed
from betwatch.store.reconciliation import (
    CommandStatus,
    InsertCommand,
    ReconciliationStore,
    RemoveCommand,
)
from betwatch.store.stream import ChangeStreamConsumer

__all__ = [
    "BetRepository",
    "MemoryBetRepository",
    "SupabaseBetRepository",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeOp",
    "MemoryChangeFeed",
    "Subscription",
    "SupabaseChangeFeed",
    "CommandStatus",
    "InsertCommand",
    "ReconciliationStore",
    "RemoveCommand",
    "ChangeStreamConsumer",
]
