"""Append-only history — the audit record of every committed transition.

Every state change the settlement workflow commits is appended here
after the ledger write succeeds. Records are immutable and sealed with
a SHA-256 hash of their canonical JSON form. The log serves as:
1. The audit trail for offers, acceptances, payments and dispatch.
2. The per-lot history returned to callers re-querying an outcome.
3. A JSONL file that is verified record by record on reload.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of settlement events."""
    # Custody
    LOT_REGISTERED = "lot_registered"
    FEES_ASSESSED = "fees_assessed"
    FEE_PAYMENT_RECORDED = "fee_payment_recorded"
    LOT_AUTHORIZED = "lot_authorized"
    LOT_ARCHIVED = "lot_archived"
    # Offers
    OFFER_CREATED = "offer_created"
    OFFER_WITHDRAWN = "offer_withdrawn"
    OFFER_REJECTED = "offer_rejected"
    OFFERS_EXPIRED = "offers_expired"
    OFFER_ACCEPTED = "offer_accepted"
    # Negotiation
    COUNTER_PROPOSED = "counter_proposed"
    COUNTER_ACCEPTED = "counter_accepted"
    COUNTER_REJECTED = "counter_rejected"
    # Verification codes
    CODE_REDEEMED = "code_redeemed"
    # Payment
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_VALIDATED = "payment_validated"
    # Dispatch
    DISPATCH_REQUESTED = "dispatch_requested"
    DISPATCH_CONFIRMED = "dispatch_confirmed"
    DISPATCH_CANCELLED = "dispatch_cancelled"


_SEALED_FIELDS = ("event_id", "event_kind", "timestamp_utc", "actor_id", "lot_id", "payload")


def _seal(fields: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the sealed fields."""
    canonical = json.dumps(
        {name: fields[name] for name in _SEALED_FIELDS},
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable history entry.

    event_hash is computed at creation and re-verified on reload.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    lot_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        lot_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        fields = {
            "event_id": event_id,
            "event_kind": event_kind.value,
            "timestamp_utc": (timestamp_utc or datetime.now(timezone.utc)).isoformat(),
            "actor_id": actor_id,
            "lot_id": lot_id,
            "payload": payload,
        }
        return EventRecord.from_dict({**fields, "event_hash": _seal(fields)})

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        """Rebuild a record, refusing one whose stored hash does not match."""
        computed = _seal(data)
        if data["event_hash"] != computed:
            raise ValueError(
                f"Integrity check failed: event {data['event_id']} "
                f"stored hash {data['event_hash']} != computed {computed}"
            )
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            lot_id=data["lot_id"],
            payload=data["payload"],
            event_hash=computed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "lot_id": self.lot_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL file persistence.

    Events can only be appended, never modified or deleted. Appends are
    serialised with a lock so concurrent request workers can share one log.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path:
                with self._storage_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")
            self._events.append(event)
            self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for_lot(self, lot_id: str) -> list[EventRecord]:
        return [e for e in self.events() if e.lot_id == lot_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            lines = [(n, raw.strip()) for n, raw in enumerate(f, 1) if raw.strip()]

        for line_no, line in lines:
            try:
                record = EventRecord.from_dict(json.loads(line))
            except ValueError as e:
                raise ValueError(f"{path.name} line {line_no}: {e}") from e
            if record.event_id in self._event_ids:
                raise ValueError(
                    f"Duplicate event ID on recovery ({path.name} line {line_no}): "
                    f"{record.event_id}"
                )
            self._events.append(record)
            self._event_ids.add(record.event_id)
