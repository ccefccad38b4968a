"""Offer registry — creation, withdrawal, rejection and expiry of sell offers.

An offer round starts when the lot's owner or custodian creates an
offer against an authorized lot and ends when the round is won (see
arbiter) or when no open offer is left. Ending a round without a winner
returns the lot to authorized; the closed offers stay in the aggregate.

Broadcast offers fan out into one sibling per eligible counter-party,
sharing a broadcast group id. Withdrawal acts on the whole group.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from tradeflow.audience.directory import CounterpartyDirectory
from tradeflow.errors import InvalidState, NotAuthorized, ValidationError
from tradeflow.identifiers import IdentifierFactory
from tradeflow.lifecycle.state_machine import LotStateMachine, OfferStateMachine
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import (
    DistributionMode,
    LotAggregate,
    Offer,
    OfferStatus,
)
from tradeflow.models.requests import CreateOfferRequest
from tradeflow.notifications import outcome, transition
from tradeflow.offers.arbiter import (
    aggregate_for_offer,
    commit,
    load_aggregate,
    reject_pending_counters,
)
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import offer_index_key
from tradeflow.persistence.transaction import LedgerView
from tradeflow.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)


class OfferRegistry:
    """Owns the offer lifecycle short of acceptance."""

    def __init__(
        self,
        resolver: PolicyResolver,
        ids: IdentifierFactory,
        directory: CounterpartyDirectory,
    ) -> None:
        self._resolver = resolver
        self._ids = ids
        self._directory = directory
        self._lots = LotStateMachine()
        self._offers = OfferStateMachine()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        view: LedgerView,
        actor_id: str,
        request: CreateOfferRequest,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate = load_aggregate(view, request.lot_id)
        lot = aggregate.lot
        if actor_id not in (lot.owner_id, lot.custodian_id):
            raise NotAuthorized(
                f"Only the owner or custodian of lot {lot.lot_id} may offer it",
                {"lot_id": lot.lot_id},
            )
        self._lots.require(lot, LotPhase.AUTHORIZED)

        terms = request.terms
        if terms.validity_days is None:
            terms = replace(terms, validity_days=self._resolver.default_validity_days())
        problems = terms.validate(*self._resolver.validity_bounds())
        if problems:
            raise ValidationError("; ".join(problems), {"lot_id": lot.lot_id})

        scope_value = self._scope_value(aggregate, request)
        audience = self._audience(aggregate, actor_id, request, scope_value)

        lot.offer_round += 1
        group_id = None
        if request.distribution.is_broadcast:
            group_id = self._ids.new_id("broadcast_group", now)
        expires = now + timedelta(days=terms.validity_days)

        created: list[Offer] = []
        for counterparty_id in audience:
            offer_id = self._ids.new_unique_id(
                "offer", now,
                lambda candidate: (
                    candidate in aggregate.offers
                    or view.exists(offer_index_key(candidate))
                ),
            )
            offer = Offer(
                offer_id=offer_id,
                lot_id=lot.lot_id,
                originator_id=actor_id,
                counterparty_id=counterparty_id,
                distribution=request.distribution,
                terms=terms,
                created_utc=now,
                expires_utc=expires,
                offer_round=lot.offer_round,
                broadcast_group_id=group_id,
                scope_value=scope_value,
            )
            aggregate.offers[offer_id] = offer
            view.put(offer_index_key(offer_id), lot.lot_id)
            created.append(offer)

        self._lots.transition(lot, LotPhase.OFFER_OPEN, now)
        commit(view, aggregate)
        return outcome(
            {
                "lot": lot.to_dict(),
                "broadcast_group_id": group_id,
                "offers": [o.to_dict() for o in created],
            },
            transition(
                EventKind.OFFER_CREATED, lot.lot_id, [actor_id, *audience],
                offer_ids=[o.offer_id for o in created],
                distribution=request.distribution.value,
                broadcast_group_id=group_id,
                offer_round=lot.offer_round,
            ),
        )

    @staticmethod
    def _scope_value(aggregate: LotAggregate, request: CreateOfferRequest) -> Optional[str]:
        if request.distribution == DistributionMode.BROADCAST_COUNTY:
            return (request.scope_value or aggregate.lot.county).strip()
        if request.distribution == DistributionMode.BROADCAST_COMMODITY:
            return (request.scope_value or aggregate.lot.commodity_type).strip()
        return None

    def _audience(
        self,
        aggregate: LotAggregate,
        actor_id: str,
        request: CreateOfferRequest,
        scope_value: Optional[str],
    ) -> list[str]:
        lot = aggregate.lot
        lot_parties = {actor_id, lot.owner_id, lot.custodian_id}
        if request.distribution == DistributionMode.DIRECT:
            target = request.target_counterparty_id.strip()
            if target in lot_parties:
                raise ValidationError(
                    "A direct offer cannot target the lot's own owner or custodian",
                    {"lot_id": lot.lot_id},
                )
            return [target]

        audience = self._directory.eligible_counterparties(
            request.distribution, scope_value, exclude_ids=lot_parties,
        )
        if not audience:
            raise ValidationError(
                f"No eligible counter-parties for {request.distribution.value}"
                + (f" ({scope_value})" if scope_value else ""),
                {"lot_id": lot.lot_id, "scope_value": scope_value},
            )
        return audience

    # ------------------------------------------------------------------
    # Closing without a winner
    # ------------------------------------------------------------------

    def withdraw(
        self,
        view: LedgerView,
        actor_id: str,
        offer_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        """Originator withdraws an open offer (and its broadcast siblings)."""
        aggregate, offer = aggregate_for_offer(view, offer_id)
        if actor_id != offer.originator_id:
            raise NotAuthorized(
                f"Only the originator may withdraw offer {offer_id}",
                {"offer_id": offer_id},
            )
        if not offer.is_open:
            raise InvalidState(
                f"Offer {offer_id} is {offer.status.value}",
                {"offer_id": offer_id, "status": offer.status.value},
            )

        group = [offer] + [o for o in aggregate.siblings(offer) if o.is_open]
        for member in group:
            self._offers.close(member, OfferStatus.EXPIRED, now, actor_id, "Withdrawn")
            reject_pending_counters(aggregate, member.offer_id, now, "Offer withdrawn")
        self._end_round_if_idle(aggregate, now)
        commit(view, aggregate)
        return outcome(
            {
                "lot": aggregate.lot.to_dict(),
                "withdrawn": [o.offer_id for o in group],
            },
            transition(
                EventKind.OFFER_WITHDRAWN, aggregate.lot_id,
                [actor_id, *(o.counterparty_id for o in group)],
                offer_ids=[o.offer_id for o in group],
            ),
        )

    def reject(
        self,
        view: LedgerView,
        actor_id: str,
        offer_id: str,
        reason: str,
        now: datetime,
    ) -> dict[str, Any]:
        """Recipient declines its copy of an offer."""
        aggregate, offer = aggregate_for_offer(view, offer_id)
        if actor_id != offer.counterparty_id:
            raise NotAuthorized(
                f"Offer {offer_id} is not addressed to {actor_id}",
                {"offer_id": offer_id},
            )
        if not offer.is_open:
            raise InvalidState(
                f"Offer {offer_id} is {offer.status.value}",
                {"offer_id": offer_id, "status": offer.status.value},
            )

        self._offers.close(offer, OfferStatus.REJECTED, now, actor_id, reason.strip())
        reject_pending_counters(aggregate, offer_id, now, "Offer rejected")
        round_ended = self._end_round_if_idle(aggregate, now)
        commit(view, aggregate)
        return outcome(
            {
                "lot": aggregate.lot.to_dict(),
                "offer": offer.to_dict(),
                "round_ended": round_ended,
            },
            transition(
                EventKind.OFFER_REJECTED, aggregate.lot_id,
                [actor_id, offer.originator_id],
                offer_id=offer_id,
                reason=reason.strip(),
            ),
        )

    def expire_lot(self, view: LedgerView, lot_id: str, now: datetime) -> dict[str, Any]:
        """Expire every lapsed open offer of one lot. Idempotent."""
        aggregate = load_aggregate(view, lot_id)
        lapsed = [o for o in aggregate.open_offers() if o.lapsed_at(now)]
        if not lapsed:
            return outcome({"lot_id": lot_id, "expired": []})

        for offer in lapsed:
            self._offers.close(offer, OfferStatus.EXPIRED, now, reason="Validity window elapsed")
            reject_pending_counters(aggregate, offer.offer_id, now, "Offer expired")
        self._end_round_if_idle(aggregate, now)
        commit(view, aggregate)
        expired_ids = [o.offer_id for o in lapsed]
        logger.info("offers.expired", lot_id=lot_id, count=len(expired_ids))
        return outcome(
            {"lot_id": lot_id, "expired": expired_ids, "phase": aggregate.lot.phase.value},
            transition(
                EventKind.OFFERS_EXPIRED, lot_id,
                [lapsed[0].originator_id, *(o.counterparty_id for o in lapsed)],
                offer_ids=expired_ids,
            ),
        )

    def _end_round_if_idle(self, aggregate: LotAggregate, now: datetime) -> bool:
        if aggregate.open_offers() or aggregate.lot.phase != LotPhase.OFFER_OPEN:
            return False
        self._lots.transition(aggregate.lot, LotPhase.AUTHORIZED, now)
        return True
