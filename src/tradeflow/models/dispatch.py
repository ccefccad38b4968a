"""Dispatch models — pickup scheduling for an accepted lot.

Dispatch runs independently of payment. A lot may hold any number of
cancelled requests but at most one that is pending or confirmed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional


class DispatchStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass
class DispatchRequest:
    request_id: str
    lot_id: str
    requested_by: str
    pickup_date: date
    address: str
    created_utc: datetime
    status: DispatchStatus = DispatchStatus.PENDING
    confirmed_by: Optional[str] = None
    confirmed_utc: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_utc: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status != DispatchStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "lot_id": self.lot_id,
            "requested_by": self.requested_by,
            "pickup_date": self.pickup_date.isoformat(),
            "address": self.address,
            "created_utc": self.created_utc.isoformat(),
            "status": self.status.value,
            "confirmed_by": self.confirmed_by,
            "confirmed_utc": self.confirmed_utc.isoformat() if self.confirmed_utc else None,
            "cancelled_by": self.cancelled_by,
            "cancelled_utc": self.cancelled_utc.isoformat() if self.cancelled_utc else None,
        }


@dataclass
class DispatchBook:
    """All dispatch requests ever made for one lot, oldest first."""
    lot_id: str
    requests: list[DispatchRequest] = field(default_factory=list)

    def active(self) -> Optional[DispatchRequest]:
        for request in self.requests:
            if request.is_active:
                return request
        return None

    def get(self, request_id: str) -> Optional[DispatchRequest]:
        for request in self.requests:
            if request.request_id == request_id:
                return request
        return None

    def has_confirmed(self) -> bool:
        return any(r.status == DispatchStatus.CONFIRMED for r in self.requests)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "requests": [r.to_dict() for r in self.requests],
        }
