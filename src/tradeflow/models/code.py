"""Verification code model — single-use proof of an acceptance event."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class VerificationCode:
    """A code bound to exactly one (lot, offer) acceptance.

    Redemption flips consumed once; later redemptions return this same
    record unchanged.
    """
    code: str
    lot_id: str
    offer_id: str
    issued_utc: datetime
    expires_utc: datetime
    consumed: bool = False
    consumed_utc: Optional[datetime] = None
    consumed_by: Optional[str] = None

    def lapsed_at(self, now: datetime) -> bool:
        return now >= self.expires_utc

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "lot_id": self.lot_id,
            "offer_id": self.offer_id,
            "issued_utc": self.issued_utc.isoformat(),
            "expires_utc": self.expires_utc.isoformat(),
            "consumed": self.consumed,
            "consumed_utc": self.consumed_utc.isoformat() if self.consumed_utc else None,
            "consumed_by": self.consumed_by,
        }
