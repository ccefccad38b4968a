"""Persistence layer — ledger, atomic runner, event log and state storage."""

from tradeflow.persistence.event_log import EventLog, EventRecord, EventKind
from tradeflow.persistence.ledger import InMemoryLedger, LedgerStore
from tradeflow.persistence.state_store import StateStore
from tradeflow.persistence.transaction import (
    AtomicRunner,
    Committed,
    IdempotencyToken,
    LedgerView,
)

__all__ = [
    "AtomicRunner",
    "Committed",
    "EventKind",
    "EventLog",
    "EventRecord",
    "IdempotencyToken",
    "InMemoryLedger",
    "LedgerStore",
    "LedgerView",
    "StateStore",
]
