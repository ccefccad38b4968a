"""Custody lot models — a physical quantity of commodity under a custodian.

A lot moves through a fixed sequence of lifecycle phases:

    in_custody → fees_due → authorized → offer_open → offer_accepted
        → dispatch_scheduled → settled

Phases only move forward, with one exception: an offer round that ends
without a winner (withdrawal, expiry, rejection) returns the lot from
offer_open to authorized so a fresh offer can be created. A settled lot
never becomes sellable again.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class LotPhase(str, enum.Enum):
    """Lifecycle phase of a custody lot."""
    IN_CUSTODY = "in_custody"
    FEES_DUE = "fees_due"
    AUTHORIZED = "authorized"
    OFFER_OPEN = "offer_open"
    OFFER_ACCEPTED = "offer_accepted"
    DISPATCH_SCHEDULED = "dispatch_scheduled"
    SETTLED = "settled"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    def at_least(self, other: LotPhase) -> bool:
        """True if this phase is at or beyond ``other`` in the lifecycle."""
        return self.rank >= other.rank


_PHASE_RANK: dict[LotPhase, int] = {
    phase: index for index, phase in enumerate(LotPhase)
}


@dataclass
class StorageFees:
    """Storage fee assessment for a lot.

    amount_due = daily_rate * days_stored * weight, rounded to cents.
    """
    daily_rate: Decimal
    days_stored: int
    amount_due: Decimal
    currency: str
    assessed_utc: datetime
    amount_paid: Decimal = Decimal("0")
    payment_references: list[str] = field(default_factory=list)
    paid_utc: Optional[datetime] = None

    @property
    def outstanding(self) -> Decimal:
        remaining = self.amount_due - self.amount_paid
        return remaining if remaining > 0 else Decimal("0")

    @property
    def settled(self) -> bool:
        return self.outstanding == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_rate": str(self.daily_rate),
            "days_stored": self.days_stored,
            "amount_due": str(self.amount_due),
            "currency": self.currency,
            "assessed_utc": self.assessed_utc.isoformat(),
            "amount_paid": str(self.amount_paid),
            "payment_references": list(self.payment_references),
            "paid_utc": self.paid_utc.isoformat() if self.paid_utc else None,
        }


@dataclass
class CustodyLot:
    """A tracked quantity of commodity held by a named custodian.

    owner_id is the party entitled to sell the lot; custodian_id is the
    warehouse operator who holds it and confirms physical dispatch.
    """
    lot_id: str
    commodity_type: str
    weight: Decimal
    unit: str
    quality_grade: str
    custodian_id: str
    owner_id: str
    county: str
    registered_utc: datetime
    phase: LotPhase = LotPhase.IN_CUSTODY
    origin: dict[str, Any] = field(default_factory=dict)
    fees: Optional[StorageFees] = None
    offer_round: int = 0
    authorized_utc: Optional[datetime] = None
    authorized_by: Optional[str] = None
    settled_utc: Optional[datetime] = None
    archived_utc: Optional[datetime] = None

    @property
    def archived(self) -> bool:
        return self.archived_utc is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "commodity_type": self.commodity_type,
            "weight": str(self.weight),
            "unit": self.unit,
            "quality_grade": self.quality_grade,
            "custodian_id": self.custodian_id,
            "owner_id": self.owner_id,
            "county": self.county,
            "registered_utc": self.registered_utc.isoformat(),
            "phase": self.phase.value,
            "origin": dict(self.origin),
            "fees": self.fees.to_dict() if self.fees else None,
            "offer_round": self.offer_round,
            "authorized_utc": (
                self.authorized_utc.isoformat() if self.authorized_utc else None
            ),
            "authorized_by": self.authorized_by,
            "settled_utc": self.settled_utc.isoformat() if self.settled_utc else None,
            "archived_utc": self.archived_utc.isoformat() if self.archived_utc else None,
        }
