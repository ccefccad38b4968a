"""Ledger store — versioned key/value storage with compare-and-set.

The ledger is the settlement core's only shared mutable state. Every
value carries a version that increments on each write; writers state the
version they read and the write fails if anyone got there first.

compare_and_set_many() is all-or-nothing across keys, which is how a lot
aggregate, its offer index entries and a freshly minted verification
code land in one atomic step. Optional guards pin the versions of keys
that were read but not written, so a commit also fails if its inputs
changed underneath it.

InMemoryLedger is the single-node implementation: one lock, deep copies
on every read and write so no caller ever shares a mutable object with
the store.
"""

from __future__ import annotations

import abc
import copy
import threading
from typing import Any, Mapping, Optional

from tradeflow.persistence.event_log import EventLog, EventRecord


# ----------------------------------------------------------------------
# Key layout
# ----------------------------------------------------------------------

def lot_key(lot_id: str) -> str:
    return f"lot:{lot_id}"


def offer_index_key(offer_id: str) -> str:
    return f"offer:{offer_id}"


def counter_index_key(counter_id: str) -> str:
    return f"counter:{counter_id}"


def payment_key(lot_id: str) -> str:
    return f"payment:{lot_id}"


def dispatch_key(lot_id: str) -> str:
    return f"dispatch:{lot_id}"


def dispatch_index_key(request_id: str) -> str:
    return f"dispatch-request:{request_id}"


def code_key(code: str) -> str:
    return f"code:{code}"


def idempotency_key(operation: str, actor_id: str, key: str) -> str:
    return f"idem:{operation}:{actor_id}:{key}"


class LedgerStore(abc.ABC):
    """Storage contract consumed by the settlement core.

    Implementations may raise TransientStoreError from any method; the
    transaction runner retries those with backoff.
    """

    @abc.abstractmethod
    def get(self, key: str) -> tuple[Any, int]:
        """Return (value, version). Absent keys return (None, 0)."""

    @abc.abstractmethod
    def compare_and_set(self, key: str, expected_version: int, value: Any) -> bool:
        """Write ``value`` if the key is still at ``expected_version``."""

    @abc.abstractmethod
    def compare_and_set_many(
        self,
        updates: Mapping[str, tuple[int, Any]],
        guards: Optional[Mapping[str, int]] = None,
    ) -> bool:
        """Apply every update or none.

        updates maps key -> (expected_version, new_value). guards maps
        read-only keys to the versions they must still have.
        """

    @abc.abstractmethod
    def append_history(self, entry: EventRecord) -> None:
        """Append an audit entry."""

    @abc.abstractmethod
    def history(self) -> list[EventRecord]:
        """Return all audit entries, oldest first."""

    @abc.abstractmethod
    def snapshot(self) -> dict[str, tuple[Any, int]]:
        """Return a copy of every (value, version) pair, keyed."""

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.snapshot() if k.startswith(prefix))


class InMemoryLedger(LedgerStore):
    """Thread-safe in-process ledger.

    Usage:
        ledger = InMemoryLedger(EventLog(Path("data/history.jsonl")))
        value, version = ledger.get("lot:L1")
        ok = ledger.compare_and_set("lot:L1", version, new_value)
    """

    def __init__(self, event_log: Optional[EventLog] = None) -> None:
        self._entries: dict[str, tuple[Any, int]] = {}
        self._lock = threading.Lock()
        self._event_log = event_log if event_log is not None else EventLog()

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    def get(self, key: str) -> tuple[Any, int]:
        with self._lock:
            value, version = self._entries.get(key, (None, 0))
            return copy.deepcopy(value), version

    def compare_and_set(self, key: str, expected_version: int, value: Any) -> bool:
        return self.compare_and_set_many({key: (expected_version, value)})

    def compare_and_set_many(
        self,
        updates: Mapping[str, tuple[int, Any]],
        guards: Optional[Mapping[str, int]] = None,
    ) -> bool:
        with self._lock:
            for key, expected in (guards or {}).items():
                if self._entries.get(key, (None, 0))[1] != expected:
                    return False
            for key, (expected, _) in updates.items():
                if self._entries.get(key, (None, 0))[1] != expected:
                    return False
            for key, (expected, value) in updates.items():
                self._entries[key] = (copy.deepcopy(value), expected + 1)
            return True

    def append_history(self, entry: EventRecord) -> None:
        self._event_log.append(entry)

    def history(self) -> list[EventRecord]:
        return self._event_log.events()

    def snapshot(self) -> dict[str, tuple[Any, int]]:
        with self._lock:
            return copy.deepcopy(self._entries)

    def restore(self, entries: Mapping[str, tuple[Any, int]]) -> None:
        """Replace all contents (used when loading persisted state)."""
        with self._lock:
            self._entries = copy.deepcopy(dict(entries))
