"""Counter-offer negotiation — one round of price counter-proposal.

The offer's recipient may propose one alternate price (optionally with
its own delivery and payment terms). The offer's originator answers:
- accept: the counter terms replace the offer terms and the offer wins
  through the arbiter's acceptance path (siblings superseded, code
  issued, lot offer_accepted).
- reject: a reason is required. The counter and its offer are rejected,
  the rest of the round is expired and the lot returns to authorized so
  the owner can start over with a fresh offer.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

import structlog

from tradeflow.errors import (
    AlreadyPending,
    InvalidState,
    NotAuthorized,
    NotFound,
)
from tradeflow.identifiers import IdentifierFactory
from tradeflow.lifecycle.state_machine import LotStateMachine, OfferStateMachine
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import (
    AcceptanceRoute,
    CounterOffer,
    CounterStatus,
    LotAggregate,
    OfferStatus,
)
from tradeflow.models.requests import ProposeCounterRequest
from tradeflow.notifications import outcome, transition
from tradeflow.offers.arbiter import (
    AcceptanceArbiter,
    aggregate_for_offer,
    commit,
    load_aggregate,
    offer_unavailable,
    reject_pending_counters,
)
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import counter_index_key
from tradeflow.persistence.transaction import LedgerView

logger = structlog.get_logger(__name__)


class NegotiationEngine:
    """Counter-offer proposal and response."""

    def __init__(self, ids: IdentifierFactory, arbiter: AcceptanceArbiter) -> None:
        self._ids = ids
        self._arbiter = arbiter
        self._lots = LotStateMachine()
        self._offers = OfferStateMachine()

    def propose(
        self,
        view: LedgerView,
        actor_id: str,
        request: ProposeCounterRequest,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate, offer = aggregate_for_offer(view, request.offer_id)
        if actor_id != offer.counterparty_id:
            raise NotAuthorized(
                f"Only the recipient of offer {offer.offer_id} may counter it",
                {"offer_id": offer.offer_id},
            )
        if not offer.is_open or offer.lapsed_at(now):
            raise InvalidState(
                f"Offer {offer.offer_id} is not open for counter-offers",
                {"offer_id": offer.offer_id, "status": offer.status.value},
            )
        pending = aggregate.pending_counter(offer.offer_id)
        if pending is not None:
            raise AlreadyPending(
                f"Offer {offer.offer_id} already has a pending counter-offer",
                {"offer_id": offer.offer_id, "counter_id": pending.counter_id},
            )

        counter_id = self._ids.new_unique_id(
            "counter_offer", now,
            lambda candidate: (
                candidate in aggregate.counters
                or view.exists(counter_index_key(candidate))
            ),
        )
        counter = CounterOffer(
            counter_id=counter_id,
            offer_id=offer.offer_id,
            lot_id=aggregate.lot_id,
            proposer_id=actor_id,
            price_per_unit=request.price_per_unit,
            note=request.note,
            created_utc=now,
            delivery_terms=request.delivery_terms,
            payment_terms=request.payment_terms,
        )
        aggregate.counters[counter_id] = counter
        view.put(counter_index_key(counter_id), aggregate.lot_id)
        commit(view, aggregate)
        return outcome(
            {"counter": counter.to_dict(), "offer": offer.to_dict()},
            transition(
                EventKind.COUNTER_PROPOSED, aggregate.lot_id,
                [actor_id, offer.originator_id],
                offer_id=offer.offer_id,
                counter_id=counter_id,
                price_per_unit=str(request.price_per_unit),
            ),
        )

    def accept(
        self,
        view: LedgerView,
        actor_id: str,
        counter_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate, counter = self._load_counter(view, actor_id, counter_id)
        offer = aggregate.offers[counter.offer_id]
        if aggregate.acceptance is not None or not offer.is_open or offer.lapsed_at(now):
            raise offer_unavailable(aggregate, offer)

        offer.terms = replace(
            offer.terms,
            price_per_unit=counter.price_per_unit,
            delivery_terms=counter.delivery_terms or offer.terms.delivery_terms,
            payment_terms=counter.payment_terms or offer.terms.payment_terms,
        )
        counter.status = CounterStatus.ACCEPTED
        counter.responded_utc = now
        counter.responded_by = actor_id
        acceptance = self._arbiter.apply_acceptance(
            view, aggregate, offer, AcceptanceRoute.COUNTER, now,
            counter_id=counter_id,
            price_per_unit=counter.price_per_unit,
        )
        return outcome(
            {
                "lot": aggregate.lot.to_dict(),
                "offer": offer.to_dict(),
                "counter": counter.to_dict(),
                "acceptance": acceptance.to_dict(),
            },
            transition(
                EventKind.COUNTER_ACCEPTED, aggregate.lot_id,
                [actor_id, counter.proposer_id, aggregate.lot.custodian_id],
                offer_id=offer.offer_id,
                counter_id=counter_id,
                price_per_unit=str(counter.price_per_unit),
                verification_code_issued=True,
            ),
        )

    def reject(
        self,
        view: LedgerView,
        actor_id: str,
        counter_id: str,
        reason: str,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate, counter = self._load_counter(view, actor_id, counter_id)
        offer = aggregate.offers[counter.offer_id]
        reason = reason.strip()

        counter.status = CounterStatus.REJECTED
        counter.responded_utc = now
        counter.responded_by = actor_id
        counter.rejection_reason = reason
        if offer.is_open:
            self._offers.close(offer, OfferStatus.REJECTED, now, actor_id, reason)
        for other in aggregate.open_offers():
            self._offers.close(
                other, OfferStatus.EXPIRED, now, actor_id, "Offer round closed",
            )
            reject_pending_counters(aggregate, other.offer_id, now, "Offer round closed")
        if aggregate.lot.phase == LotPhase.OFFER_OPEN:
            self._lots.transition(aggregate.lot, LotPhase.AUTHORIZED, now)
        commit(view, aggregate)
        return outcome(
            {
                "lot": aggregate.lot.to_dict(),
                "offer": offer.to_dict(),
                "counter": counter.to_dict(),
            },
            transition(
                EventKind.COUNTER_REJECTED, aggregate.lot_id,
                [actor_id, counter.proposer_id],
                offer_id=offer.offer_id,
                counter_id=counter_id,
                reason=reason,
            ),
        )

    @staticmethod
    def _load_counter(
        view: LedgerView,
        actor_id: str,
        counter_id: str,
    ) -> tuple[LotAggregate, CounterOffer]:
        lot_id = view.get(counter_index_key(counter_id))
        if lot_id is None:
            raise NotFound(f"Counter-offer not found: {counter_id}", {"counter_id": counter_id})
        aggregate = load_aggregate(view, lot_id)
        counter = aggregate.counters[counter_id]
        offer = aggregate.offers[counter.offer_id]
        if actor_id != offer.originator_id:
            raise NotAuthorized(
                f"Only the originator of offer {offer.offer_id} may respond",
                {"counter_id": counter_id},
            )
        if not counter.is_pending:
            raise InvalidState(
                f"Counter-offer {counter_id} is {counter.status.value}",
                {"counter_id": counter_id, "status": counter.status.value},
            )
        return aggregate, counter
