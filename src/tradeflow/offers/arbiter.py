"""Acceptance arbiter — at most one winner per custody lot.

A lot and all of its offers live in one ledger entry (the lot
aggregate). Every write to that entry goes through commit() inside an
AtomicRunner transaction, so concurrent claims serialise on the
aggregate's version:

1. Re-read the target offer from the aggregate.
2. If it is no longer open (or has lapsed), the claim loses with
   AlreadyTaken. The losing claimant never sees a silent success.
3. Otherwise mark it accepted, supersede every other open offer of the
   lot, move the lot to offer_accepted and mint the verification code,
   all in the same compare-and-set.

A claim whose commit conflicts is re-run on fresh data and then loses
cleanly at step 2.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from tradeflow.codes.issuer import CodeIssuer
from tradeflow.errors import AlreadyTaken, NotAuthorized, NotFound
from tradeflow.identifiers import IdentifierFactory
from tradeflow.lifecycle.state_machine import LotStateMachine, OfferStateMachine
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import (
    Acceptance,
    AcceptanceClaim,
    AcceptanceRoute,
    CounterStatus,
    LotAggregate,
    Offer,
    OfferStatus,
)
from tradeflow.notifications import outcome, transition
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import lot_key, offer_index_key
from tradeflow.persistence.transaction import LedgerView

logger = structlog.get_logger(__name__)


# ----------------------------------------------------------------------
# Aggregate access
# ----------------------------------------------------------------------

def load_aggregate(view: LedgerView, lot_id: str) -> LotAggregate:
    aggregate = view.get(lot_key(lot_id))
    if aggregate is None:
        raise NotFound(f"Lot not found: {lot_id}", {"lot_id": lot_id})
    return aggregate


def aggregate_for_offer(view: LedgerView, offer_id: str) -> tuple[LotAggregate, Offer]:
    lot_id = view.get(offer_index_key(offer_id))
    if lot_id is None:
        raise NotFound(f"Offer not found: {offer_id}", {"offer_id": offer_id})
    aggregate = load_aggregate(view, lot_id)
    return aggregate, aggregate.offers[offer_id]


def commit(view: LedgerView, aggregate: LotAggregate) -> None:
    view.put(lot_key(aggregate.lot_id), aggregate)


def reject_pending_counters(
    aggregate: LotAggregate,
    offer_id: str,
    now: datetime,
    reason: str,
) -> None:
    """Close any counter-offer still pending against ``offer_id``."""
    counter = aggregate.pending_counter(offer_id)
    if counter is not None:
        counter.status = CounterStatus.REJECTED
        counter.responded_utc = now
        counter.rejection_reason = reason


def offer_unavailable(aggregate: LotAggregate, offer: Offer) -> AlreadyTaken:
    """AlreadyTaken for a lost claim, reporting the offer's effective status.

    An offer that is still open here has lapsed without a sweep, so it is
    reported as expired.
    """
    status = OfferStatus.EXPIRED if offer.is_open else offer.status
    return AlreadyTaken(
        f"Offer {offer.offer_id} is no longer available",
        {
            "lot_id": aggregate.lot_id,
            "offer_id": offer.offer_id,
            "status": status.value,
            "winning_offer_id": (
                aggregate.acceptance.offer_id if aggregate.acceptance else None
            ),
        },
    )


class AcceptanceArbiter:
    """Resolves acceptance races on the lot aggregate.

    Usage:
        arbiter = AcceptanceArbiter(ids, CodeIssuer(resolver))
        payload = runner.run(lambda view: arbiter.accept(view, "exporter-b", "FPO-...", now))
    """

    def __init__(self, ids: IdentifierFactory, issuer: CodeIssuer) -> None:
        self._ids = ids
        self._issuer = issuer
        self._lots = LotStateMachine()
        self._offers = OfferStateMachine()

    def accept(
        self,
        view: LedgerView,
        claimant_id: str,
        offer_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        """Claim ``offer_id`` for ``claimant_id``. Raises AlreadyTaken on a lost race."""
        aggregate, offer = aggregate_for_offer(view, offer_id)
        if claimant_id != offer.counterparty_id:
            raise NotAuthorized(
                f"Offer {offer_id} is not addressed to {claimant_id}",
                {"offer_id": offer_id},
            )

        if aggregate.acceptance is not None or not offer.is_open or offer.lapsed_at(now):
            lost = offer_unavailable(aggregate, offer)
            logger.info(
                "offer.claim_lost",
                lot_id=aggregate.lot_id,
                offer_id=offer_id,
                claimant_id=claimant_id,
                status=lost.details["status"],
            )
            raise lost

        claim = AcceptanceClaim(
            claim_id=self._ids.new_id("claim", now),
            offer_id=offer_id,
            claimant_id=claimant_id,
            submitted_utc=now,
        )
        acceptance = self.apply_acceptance(
            view, aggregate, offer, AcceptanceRoute.CLAIM, now,
            claim_id=claim.claim_id,
        )
        return outcome(
            {
                "won": True,
                "lot": aggregate.lot.to_dict(),
                "offer": offer.to_dict(),
                "acceptance": acceptance.to_dict(),
            },
            transition(
                EventKind.OFFER_ACCEPTED,
                aggregate.lot_id,
                [claimant_id, offer.originator_id, aggregate.lot.custodian_id],
                offer_id=offer_id,
                claim_id=claim.claim_id,
                superseded=self._superseded_ids(aggregate, offer),
                verification_code_issued=True,
            ),
        )

    def apply_acceptance(
        self,
        view: LedgerView,
        aggregate: LotAggregate,
        offer: Offer,
        route: AcceptanceRoute,
        now: datetime,
        claim_id: Optional[str] = None,
        counter_id: Optional[str] = None,
        price_per_unit: Optional[Decimal] = None,
    ) -> Acceptance:
        """Record ``offer`` as the lot's winner and stage the aggregate write.

        Shared by direct claims and accepted counter-offers.
        """
        self._offers.close(offer, OfferStatus.ACCEPTED, now, offer.counterparty_id)
        for other in aggregate.open_offers():
            self._offers.close(
                other, OfferStatus.SUPERSEDED, now,
                reason=f"Offer {offer.offer_id} was accepted",
            )
            reject_pending_counters(aggregate, other.offer_id, now, "Offer superseded")
        self._lots.transition(aggregate.lot, LotPhase.OFFER_ACCEPTED, now)

        acceptance = Acceptance(
            offer_id=offer.offer_id,
            originator_id=offer.originator_id,
            counterparty_id=offer.counterparty_id,
            price_per_unit=price_per_unit or offer.terms.price_per_unit,
            accepted_utc=now,
            route=route,
            claim_id=claim_id,
            counter_id=counter_id,
        )
        aggregate.acceptance = acceptance
        self._issuer.issue(view, aggregate, offer, now)
        commit(view, aggregate)
        return acceptance

    @staticmethod
    def _superseded_ids(aggregate: LotAggregate, winner: Offer) -> list[str]:
        return sorted(
            o.offer_id for o in aggregate.offers.values()
            if o.status == OfferStatus.SUPERSEDED
            and o.offer_round == winner.offer_round
        )
