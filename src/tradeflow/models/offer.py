"""Offer models — sell offers, acceptance claims, counter-offers.

A CustodyLot and every offer ever made against it form one consistency
domain, stored together as a LotAggregate under a single ledger key. All
sibling offers of a broadcast therefore change in the same atomic write
as the lot phase they affect.

Offers are never deleted. Closed offers stay in the aggregate with their
terminal status (accepted, rejected, expired, superseded) for audit.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from tradeflow.models.lot import CustodyLot


class DistributionMode(str, enum.Enum):
    """How an offer reaches counter-parties.

    DIRECT targets a single counter-party. The broadcast modes fan out one
    claimable sibling offer per eligible counter-party in scope.
    """
    DIRECT = "direct"
    BROADCAST_COUNTY = "broadcast_county"
    BROADCAST_COMMODITY = "broadcast_commodity"
    BROADCAST_ALL = "broadcast_all"

    @property
    def is_broadcast(self) -> bool:
        return self is not DistributionMode.DIRECT


class OfferStatus(str, enum.Enum):
    """Offer status. Only OPEN is non-terminal."""
    OPEN = "open"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class CounterStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AcceptanceRoute(str, enum.Enum):
    """Which path produced the winning acceptance."""
    CLAIM = "claim"
    COUNTER = "counter"


def is_positive_amount(value: Optional[Decimal]) -> bool:
    """True for a finite amount above zero. NaN and infinities are refused."""
    if value is None:
        return False
    amount = Decimal(value)
    return amount.is_finite() and amount > 0


@dataclass(frozen=True)
class OfferTerms:
    """Commercial terms of an offer."""
    price_per_unit: Decimal
    delivery_terms: str
    payment_terms: str
    validity_days: Optional[int] = None

    def validate(self, min_days: int, max_days: int) -> list[str]:
        """Return a list of problems with these terms (empty = valid)."""
        errors: list[str] = []
        if not is_positive_amount(self.price_per_unit):
            errors.append("Price per unit must be positive")
        if not (self.delivery_terms or "").strip():
            errors.append("Delivery terms are required")
        if not (self.payment_terms or "").strip():
            errors.append("Payment terms are required")
        if self.validity_days is None or not (min_days <= self.validity_days <= max_days):
            errors.append(
                f"Validity window must be between {min_days} and {max_days} "
                f"days, got {self.validity_days}"
            )
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "price_per_unit": str(self.price_per_unit),
            "delivery_terms": self.delivery_terms,
            "payment_terms": self.payment_terms,
            "validity_days": self.validity_days,
        }


@dataclass
class Offer:
    """A proposal to sell one custody lot to one counter-party.

    Broadcast siblings share broadcast_group_id but are independently
    claimable. The terms of an open offer change only through an accepted
    counter-offer.
    """
    offer_id: str
    lot_id: str
    originator_id: str
    counterparty_id: str
    distribution: DistributionMode
    terms: OfferTerms
    created_utc: datetime
    expires_utc: datetime
    offer_round: int
    status: OfferStatus = OfferStatus.OPEN
    broadcast_group_id: Optional[str] = None
    scope_value: Optional[str] = None
    accepted_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None
    closed_by: Optional[str] = None
    close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self.status == OfferStatus.OPEN

    def lapsed_at(self, now: datetime) -> bool:
        """True once the validity window has elapsed."""
        return now >= self.expires_utc

    def close(
        self,
        status: OfferStatus,
        now: datetime,
        actor_id: Optional[str] = None,
        reason: str = "",
    ) -> None:
        self.status = status
        self.closed_utc = now
        self.closed_by = actor_id
        self.close_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "lot_id": self.lot_id,
            "originator_id": self.originator_id,
            "counterparty_id": self.counterparty_id,
            "distribution": self.distribution.value,
            "terms": self.terms.to_dict(),
            "created_utc": self.created_utc.isoformat(),
            "expires_utc": self.expires_utc.isoformat(),
            "offer_round": self.offer_round,
            "status": self.status.value,
            "broadcast_group_id": self.broadcast_group_id,
            "scope_value": self.scope_value,
            "accepted_utc": self.accepted_utc.isoformat() if self.accepted_utc else None,
            "closed_utc": self.closed_utc.isoformat() if self.closed_utc else None,
            "closed_by": self.closed_by,
            "close_reason": self.close_reason,
        }


@dataclass(frozen=True)
class AcceptanceClaim:
    """One counter-party's attempt to accept one offer.

    Lives only for the duration of arbitration; the outcome is folded
    into the offer and lot state.
    """
    claim_id: str
    offer_id: str
    claimant_id: str
    submitted_utc: datetime


@dataclass
class CounterOffer:
    """A single alternate-price proposal from an offer's recipient."""
    counter_id: str
    offer_id: str
    lot_id: str
    proposer_id: str
    price_per_unit: Decimal
    note: str
    created_utc: datetime
    delivery_terms: Optional[str] = None
    payment_terms: Optional[str] = None
    status: CounterStatus = CounterStatus.PENDING
    responded_utc: Optional[datetime] = None
    responded_by: Optional[str] = None
    rejection_reason: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == CounterStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "counter_id": self.counter_id,
            "offer_id": self.offer_id,
            "lot_id": self.lot_id,
            "proposer_id": self.proposer_id,
            "price_per_unit": str(self.price_per_unit),
            "note": self.note,
            "created_utc": self.created_utc.isoformat(),
            "delivery_terms": self.delivery_terms,
            "payment_terms": self.payment_terms,
            "status": self.status.value,
            "responded_utc": self.responded_utc.isoformat() if self.responded_utc else None,
            "responded_by": self.responded_by,
            "rejection_reason": self.rejection_reason,
        }


@dataclass
class Acceptance:
    """The winning acceptance of a lot, with its bound verification code."""
    offer_id: str
    originator_id: str
    counterparty_id: str
    price_per_unit: Decimal
    accepted_utc: datetime
    route: AcceptanceRoute
    claim_id: Optional[str] = None
    counter_id: Optional[str] = None
    verification_code: Optional[str] = None

    @property
    def parties(self) -> tuple[str, str]:
        return (self.originator_id, self.counterparty_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "originator_id": self.originator_id,
            "counterparty_id": self.counterparty_id,
            "price_per_unit": str(self.price_per_unit),
            "accepted_utc": self.accepted_utc.isoformat(),
            "route": self.route.value,
            "claim_id": self.claim_id,
            "counter_id": self.counter_id,
            "verification_code": self.verification_code,
        }


@dataclass
class LotAggregate:
    """A lot together with every offer and counter-offer made against it."""
    lot: CustodyLot
    offers: dict[str, Offer] = field(default_factory=dict)
    counters: dict[str, CounterOffer] = field(default_factory=dict)
    acceptance: Optional[Acceptance] = None

    @property
    def lot_id(self) -> str:
        return self.lot.lot_id

    def open_offers(self) -> list[Offer]:
        return [o for o in self.offers.values() if o.is_open]

    def siblings(self, offer: Offer) -> list[Offer]:
        """Other offers of the same broadcast group."""
        if offer.broadcast_group_id is None:
            return []
        return [
            o for o in self.offers.values()
            if o.broadcast_group_id == offer.broadcast_group_id
            and o.offer_id != offer.offer_id
        ]

    def pending_counter(self, offer_id: str) -> Optional[CounterOffer]:
        for counter in self.counters.values():
            if counter.offer_id == offer_id and counter.is_pending:
                return counter
        return None

    def is_trading_party(self, actor_id: str) -> bool:
        return self.acceptance is not None and actor_id in self.acceptance.parties

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot": self.lot.to_dict(),
            "offers": {oid: o.to_dict() for oid, o in self.offers.items()},
            "counters": {cid: c.to_dict() for cid, c in self.counters.items()},
            "acceptance": self.acceptance.to_dict() if self.acceptance else None,
        }
