"""Lifecycle state machines for lots and offers.

Transition tables are the single source of truth for which moves are
legal. Engines call transition(); they never assign phase or status
directly.
"""

from __future__ import annotations

from datetime import datetime

from tradeflow.errors import InvalidLotState, InvalidState
from tradeflow.models.lot import CustodyLot, LotPhase
from tradeflow.models.offer import Offer, OfferStatus


LOT_TRANSITIONS: dict[LotPhase, frozenset[LotPhase]] = {
    LotPhase.IN_CUSTODY: frozenset({LotPhase.FEES_DUE, LotPhase.AUTHORIZED}),
    LotPhase.FEES_DUE: frozenset({LotPhase.AUTHORIZED}),
    LotPhase.AUTHORIZED: frozenset({LotPhase.OFFER_OPEN}),
    # offer_open → authorized is the only backward edge (round ended, no winner)
    LotPhase.OFFER_OPEN: frozenset({LotPhase.OFFER_ACCEPTED, LotPhase.AUTHORIZED}),
    LotPhase.OFFER_ACCEPTED: frozenset({LotPhase.DISPATCH_SCHEDULED, LotPhase.SETTLED}),
    LotPhase.DISPATCH_SCHEDULED: frozenset({LotPhase.SETTLED}),
    LotPhase.SETTLED: frozenset(),
}

OFFER_TRANSITIONS: dict[OfferStatus, frozenset[OfferStatus]] = {
    OfferStatus.OPEN: frozenset({
        OfferStatus.ACCEPTED,
        OfferStatus.REJECTED,
        OfferStatus.EXPIRED,
        OfferStatus.SUPERSEDED,
    }),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.EXPIRED: frozenset(),
    OfferStatus.SUPERSEDED: frozenset(),
}


class LotStateMachine:
    """Validates and applies lot phase transitions."""

    @staticmethod
    def can_transition(current: LotPhase, target: LotPhase) -> bool:
        return target in LOT_TRANSITIONS[current]

    def transition(self, lot: CustodyLot, target: LotPhase, now: datetime) -> None:
        """Move the lot to ``target`` or raise InvalidLotState."""
        if lot.archived:
            raise InvalidLotState(
                f"Lot {lot.lot_id} is archived",
                {"lot_id": lot.lot_id, "phase": lot.phase.value},
            )
        if not self.can_transition(lot.phase, target):
            raise InvalidLotState(
                f"Lot {lot.lot_id} cannot move from {lot.phase.value} "
                f"to {target.value}",
                {"lot_id": lot.lot_id, "phase": lot.phase.value},
            )
        lot.phase = target
        if target == LotPhase.AUTHORIZED and lot.authorized_utc is None:
            lot.authorized_utc = now
        if target == LotPhase.SETTLED:
            lot.settled_utc = now

    def advance_to(self, lot: CustodyLot, target: LotPhase, now: datetime) -> bool:
        """Move forward to ``target`` unless the lot is already at or past it.

        Returns True if the phase changed. Used where two independent
        workflows may push the lot forward in either order.
        """
        if lot.phase.at_least(target):
            return False
        self.transition(lot, target, now)
        return True

    @staticmethod
    def require(lot: CustodyLot, *allowed: LotPhase) -> None:
        if lot.phase not in allowed:
            raise InvalidLotState(
                f"Lot {lot.lot_id} is {lot.phase.value}; expected one of "
                f"{', '.join(p.value for p in allowed)}",
                {"lot_id": lot.lot_id, "phase": lot.phase.value},
            )


class OfferStateMachine:
    """Validates and applies offer status transitions."""

    @staticmethod
    def can_transition(current: OfferStatus, target: OfferStatus) -> bool:
        return target in OFFER_TRANSITIONS[current]

    def close(
        self,
        offer: Offer,
        target: OfferStatus,
        now: datetime,
        actor_id: str | None = None,
        reason: str = "",
    ) -> None:
        if not self.can_transition(offer.status, target):
            raise InvalidState(
                f"Offer {offer.offer_id} is {offer.status.value}; "
                f"cannot become {target.value}",
                {"offer_id": offer.offer_id, "status": offer.status.value},
            )
        offer.close(target, now, actor_id, reason)
        if target == OfferStatus.ACCEPTED:
            offer.accepted_utc = now
