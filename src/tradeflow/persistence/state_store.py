"""State store — JSON snapshot persistence for settlement runtime state.

Stores and recovers:
- Ledger contents (lot aggregates, payment workflows, dispatch books,
  verification codes, index entries, idempotency records) with their
  versions, so optimistic concurrency resumes where it left off
- The counter-party directory

History is not stored here; it lives in the EventLog's JSONL file.

This is a simple file-based store suitable for single-node deployment.
Each save rewrites the whole snapshot through a temporary file.
"""

from __future__ import annotations

import json
import threading
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

from tradeflow.audience.directory import (
    CounterpartyDirectory,
    Participant,
    ParticipantRole,
    ParticipantStatus,
)
from tradeflow.models.code import VerificationCode
from tradeflow.models.dispatch import DispatchBook, DispatchRequest, DispatchStatus
from tradeflow.models.lot import CustodyLot, LotPhase, StorageFees
from tradeflow.models.offer import (
    Acceptance,
    AcceptanceRoute,
    CounterOffer,
    CounterStatus,
    DistributionMode,
    LotAggregate,
    Offer,
    OfferStatus,
    OfferTerms,
)
from tradeflow.models.payment import PaymentWorkflow
from tradeflow.persistence.ledger import InMemoryLedger, LedgerStore


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _as_is(value: Any) -> Any:
    return value


class StateStore:
    """JSON file-based state persistence.

    Usage:
        store = StateStore(Path("data/settlement_state.json"))
        store.save_ledger(ledger)
        store.save_directory(directory)

        # On recovery:
        store.load_into(ledger)
        directory = store.load_directory()
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        self._lock = threading.Lock()
        if storage_path.exists():
            self._load()

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._state = json.load(f)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)
        tmp.replace(self._path)

    # ------------------------------------------------------------------
    # Ledger persistence
    # ------------------------------------------------------------------

    def save_ledger(self, ledger: LedgerStore) -> None:
        """Serialize every ledger entry with its version.

        The snapshot is taken under the store lock so concurrent savers
        never write an older snapshot over a newer one.
        """
        with self._lock:
            entries = {}
            for key, (value, version) in ledger.snapshot().items():
                prefix = key.split(":", 1)[0]
                encoder = _ENCODERS.get(prefix)
                if encoder is None:
                    raise ValueError(f"No serializer for ledger key {key!r}")
                entries[key] = {"version": version, "value": encoder(value)}
            self._state["ledger"] = entries
            self._save()

    def load_into(self, ledger: InMemoryLedger) -> int:
        """Restore ledger entries from state. Returns the entry count."""
        restored: dict[str, tuple[Any, int]] = {}
        for key, data in self._state.get("ledger", {}).items():
            prefix = key.split(":", 1)[0]
            decoder = _DECODERS.get(prefix)
            if decoder is None:
                raise ValueError(f"No deserializer for ledger key {key!r}")
            restored[key] = (decoder(data["value"]), data["version"])
        ledger.restore(restored)
        return len(restored)

    # ------------------------------------------------------------------
    # Directory persistence
    # ------------------------------------------------------------------

    def save_directory(self, directory: CounterpartyDirectory) -> None:
        """Serialize the counter-party directory to state."""
        entries = []
        for participant in directory.all_participants():
            entries.append({
                "actor_id": participant.actor_id,
                "role": participant.role.value,
                "county": participant.county,
                "commodities": sorted(participant.commodities),
                "status": participant.status.value,
            })
        with self._lock:
            self._state["directory"] = entries
            self._save()

    def load_directory(self) -> CounterpartyDirectory:
        """Deserialize the counter-party directory from state."""
        directory = CounterpartyDirectory()
        for data in self._state.get("directory", []):
            directory.register(Participant(
                actor_id=data["actor_id"],
                role=ParticipantRole(data["role"]),
                county=data["county"],
                commodities=frozenset(data.get("commodities", [])),
                status=ParticipantStatus(data.get("status", "active")),
            ))
        return directory


# ----------------------------------------------------------------------
# Model decoding
# ----------------------------------------------------------------------

def _fees_from_dict(data: dict[str, Any]) -> StorageFees:
    return StorageFees(
        daily_rate=Decimal(data["daily_rate"]),
        days_stored=data["days_stored"],
        amount_due=Decimal(data["amount_due"]),
        currency=data["currency"],
        assessed_utc=_dt(data["assessed_utc"]),
        amount_paid=Decimal(data.get("amount_paid", "0")),
        payment_references=list(data.get("payment_references", [])),
        paid_utc=_dt(data.get("paid_utc")),
    )


def _lot_from_dict(data: dict[str, Any]) -> CustodyLot:
    return CustodyLot(
        lot_id=data["lot_id"],
        commodity_type=data["commodity_type"],
        weight=Decimal(data["weight"]),
        unit=data["unit"],
        quality_grade=data.get("quality_grade", ""),
        custodian_id=data["custodian_id"],
        owner_id=data["owner_id"],
        county=data["county"],
        registered_utc=_dt(data["registered_utc"]),
        phase=LotPhase(data["phase"]),
        origin=dict(data.get("origin", {})),
        fees=_fees_from_dict(data["fees"]) if data.get("fees") else None,
        offer_round=data.get("offer_round", 0),
        authorized_utc=_dt(data.get("authorized_utc")),
        authorized_by=data.get("authorized_by"),
        settled_utc=_dt(data.get("settled_utc")),
        archived_utc=_dt(data.get("archived_utc")),
    )


def _offer_from_dict(data: dict[str, Any]) -> Offer:
    terms = data["terms"]
    return Offer(
        offer_id=data["offer_id"],
        lot_id=data["lot_id"],
        originator_id=data["originator_id"],
        counterparty_id=data["counterparty_id"],
        distribution=DistributionMode(data["distribution"]),
        terms=OfferTerms(
            price_per_unit=Decimal(terms["price_per_unit"]),
            delivery_terms=terms["delivery_terms"],
            payment_terms=terms["payment_terms"],
            validity_days=terms["validity_days"],
        ),
        created_utc=_dt(data["created_utc"]),
        expires_utc=_dt(data["expires_utc"]),
        offer_round=data["offer_round"],
        status=OfferStatus(data["status"]),
        broadcast_group_id=data.get("broadcast_group_id"),
        scope_value=data.get("scope_value"),
        accepted_utc=_dt(data.get("accepted_utc")),
        closed_utc=_dt(data.get("closed_utc")),
        closed_by=data.get("closed_by"),
        close_reason=data.get("close_reason", ""),
    )


def _counter_from_dict(data: dict[str, Any]) -> CounterOffer:
    return CounterOffer(
        counter_id=data["counter_id"],
        offer_id=data["offer_id"],
        lot_id=data["lot_id"],
        proposer_id=data["proposer_id"],
        price_per_unit=Decimal(data["price_per_unit"]),
        note=data.get("note", ""),
        created_utc=_dt(data["created_utc"]),
        delivery_terms=data.get("delivery_terms"),
        payment_terms=data.get("payment_terms"),
        status=CounterStatus(data["status"]),
        responded_utc=_dt(data.get("responded_utc")),
        responded_by=data.get("responded_by"),
        rejection_reason=data.get("rejection_reason", ""),
    )


def _acceptance_from_dict(data: dict[str, Any]) -> Acceptance:
    return Acceptance(
        offer_id=data["offer_id"],
        originator_id=data["originator_id"],
        counterparty_id=data["counterparty_id"],
        price_per_unit=Decimal(data["price_per_unit"]),
        accepted_utc=_dt(data["accepted_utc"]),
        route=AcceptanceRoute(data["route"]),
        claim_id=data.get("claim_id"),
        counter_id=data.get("counter_id"),
        verification_code=data.get("verification_code"),
    )


def aggregate_from_dict(data: dict[str, Any]) -> LotAggregate:
    return LotAggregate(
        lot=_lot_from_dict(data["lot"]),
        offers={oid: _offer_from_dict(o) for oid, o in data.get("offers", {}).items()},
        counters={
            cid: _counter_from_dict(c) for cid, c in data.get("counters", {}).items()
        },
        acceptance=(
            _acceptance_from_dict(data["acceptance"]) if data.get("acceptance") else None
        ),
    )


def _payment_from_dict(data: dict[str, Any]) -> PaymentWorkflow:
    return PaymentWorkflow(
        lot_id=data["lot_id"],
        offer_id=data["offer_id"],
        requested_by=data["requested_by"],
        requested_utc=_dt(data["requested_utc"]),
        confirmed_by=data.get("confirmed_by"),
        confirmed_utc=_dt(data.get("confirmed_utc")),
        validated_by=data.get("validated_by"),
        validated_utc=_dt(data.get("validated_utc")),
    )


def _dispatch_book_from_dict(data: dict[str, Any]) -> DispatchBook:
    return DispatchBook(
        lot_id=data["lot_id"],
        requests=[
            DispatchRequest(
                request_id=r["request_id"],
                lot_id=r["lot_id"],
                requested_by=r["requested_by"],
                pickup_date=date.fromisoformat(r["pickup_date"]),
                address=r["address"],
                created_utc=_dt(r["created_utc"]),
                status=DispatchStatus(r["status"]),
                confirmed_by=r.get("confirmed_by"),
                confirmed_utc=_dt(r.get("confirmed_utc")),
                cancelled_by=r.get("cancelled_by"),
                cancelled_utc=_dt(r.get("cancelled_utc")),
            )
            for r in data.get("requests", [])
        ],
    )


def _code_from_dict(data: dict[str, Any]) -> VerificationCode:
    return VerificationCode(
        code=data["code"],
        lot_id=data["lot_id"],
        offer_id=data["offer_id"],
        issued_utc=_dt(data["issued_utc"]),
        expires_utc=_dt(data["expires_utc"]),
        consumed=data.get("consumed", False),
        consumed_utc=_dt(data.get("consumed_utc")),
        consumed_by=data.get("consumed_by"),
    )


def _to_dict(value: Any) -> Any:
    return value.to_dict()


# Index entries hold a lot id; idempotency records are already plain JSON.
_ENCODERS: dict[str, Callable[[Any], Any]] = {
    "lot": _to_dict,
    "payment": _to_dict,
    "dispatch": _to_dict,
    "code": _to_dict,
    "offer": _as_is,
    "counter": _as_is,
    "dispatch-request": _as_is,
    "idem": _as_is,
}

_DECODERS: dict[str, Callable[[Any], Any]] = {
    "lot": aggregate_from_dict,
    "payment": _payment_from_dict,
    "dispatch": _dispatch_book_from_dict,
    "code": _code_from_dict,
    "offer": _as_is,
    "counter": _as_is,
    "dispatch-request": _as_is,
    "idem": _as_is,
}
