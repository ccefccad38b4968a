"""Payment workflow model — the three-phase payment handshake.

    none → requested → confirmed → validated

Strictly linear. The counter-party of the requester confirms, and only
the original requester validates, so neither side can complete a payment
alone. A validated workflow is immutable.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


class PaymentPhase(str, enum.Enum):
    NONE = "none"
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    VALIDATED = "validated"


@dataclass
class PaymentWorkflow:
    """Payment state for one accepted offer (one per lot)."""
    lot_id: str
    offer_id: str
    requested_by: str
    requested_utc: datetime
    confirmed_by: Optional[str] = None
    confirmed_utc: Optional[datetime] = None
    validated_by: Optional[str] = None
    validated_utc: Optional[datetime] = None

    @property
    def requested(self) -> bool:
        return True

    @property
    def confirmed(self) -> bool:
        return self.confirmed_utc is not None

    @property
    def validated(self) -> bool:
        return self.validated_utc is not None

    @property
    def phase(self) -> PaymentPhase:
        if self.validated:
            return PaymentPhase.VALIDATED
        if self.confirmed:
            return PaymentPhase.CONFIRMED
        return PaymentPhase.REQUESTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "offer_id": self.offer_id,
            "phase": self.phase.value,
            "requested_by": self.requested_by,
            "requested_utc": self.requested_utc.isoformat(),
            "confirmed_by": self.confirmed_by,
            "confirmed_utc": self.confirmed_utc.isoformat() if self.confirmed_utc else None,
            "validated_by": self.validated_by,
            "validated_utc": self.validated_utc.isoformat() if self.validated_utc else None,
        }
