"""Counter-party directory — who can receive a broadcast offer.

The directory is the core's view of the Identity/Profile collaborator:
it stores only opaque actor identifiers plus the attributes needed to
resolve a broadcast scope:
- Role (only exporters receive sell offers)
- County (for county broadcasts)
- Commodities traded (for commodity broadcasts)
- Status (suspended participants receive nothing)

Invariants enforced:
- An offer is never fanned out to its own originator.
- An offer is never fanned out to the lot's custodian.
- The audience is returned in a stable order (sorted by actor id) so
  fan-out is reproducible.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from tradeflow.models.offer import DistributionMode


class ParticipantRole(str, enum.Enum):
    EXPORTER = "exporter"
    BUYER = "buyer"
    CUSTODIAN = "custodian"
    TRANSPORTER = "transporter"


class ParticipantStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass
class Participant:
    """A registered trading participant."""
    actor_id: str
    role: ParticipantRole
    county: str
    commodities: frozenset[str] = field(default_factory=frozenset)
    status: ParticipantStatus = ParticipantStatus.ACTIVE

    def is_available(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE

    def trades(self, commodity: str) -> bool:
        return commodity.strip().lower() in {c.lower() for c in self.commodities}


class CounterpartyDirectory:
    """Registry of participants, safe to share between request workers."""

    def __init__(self, participants: Iterable[Participant] = ()) -> None:
        self._participants: dict[str, Participant] = {}
        self._lock = threading.Lock()
        for participant in participants:
            self.register(participant)

    def register(self, participant: Participant) -> None:
        """Register a participant or replace an existing entry.

        Raises ValueError if actor_id or county is blank.
        """
        canonical_id = participant.actor_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register participant with blank ID")
        if not participant.county.strip():
            raise ValueError(f"Participant {canonical_id} has no county")
        participant.actor_id = canonical_id
        participant.commodities = frozenset(
            c.strip() for c in participant.commodities if c.strip()
        )
        with self._lock:
            self._participants[canonical_id] = participant

    def get(self, actor_id: str) -> Optional[Participant]:
        with self._lock:
            return self._participants.get(actor_id.strip())

    def all_participants(self) -> list[Participant]:
        with self._lock:
            return sorted(self._participants.values(), key=lambda p: p.actor_id)

    def eligible_counterparties(
        self,
        mode: DistributionMode,
        scope_value: Optional[str],
        exclude_ids: set[str] | None = None,
    ) -> list[str]:
        """Return the actor ids a broadcast in ``mode`` reaches.

        scope_value is the county for BROADCAST_COUNTY and the commodity
        for BROADCAST_COMMODITY; it is ignored for BROADCAST_ALL.
        """
        if not mode.is_broadcast:
            raise ValueError("Direct offers have no broadcast audience")
        exclude = exclude_ids or set()
        audience = []
        for participant in self.all_participants():
            if participant.role != ParticipantRole.EXPORTER:
                continue
            if not participant.is_available() or participant.actor_id in exclude:
                continue
            if mode == DistributionMode.BROADCAST_COUNTY:
                if participant.county.lower() != (scope_value or "").strip().lower():
                    continue
            elif mode == DistributionMode.BROADCAST_COMMODITY:
                if not participant.trades(scope_value or ""):
                    continue
            audience.append(participant.actor_id)
        return audience

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._participants)
