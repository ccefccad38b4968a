"""Payment workflow — request, counter-party confirmation, requester validation.

    none → requested → confirmed → validated

Either trading party may open the workflow. The other party confirms;
only the original requester validates. Validation settles the lot.

Repeating a completed step as the same actor is a no-op success, so a
client that lost the response can retry safely.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from tradeflow.errors import (
    AlreadyRequested,
    InvalidLotState,
    NotAuthorized,
    NotConfirmed,
    NotRequested,
    SameParty,
)
from tradeflow.lifecycle.state_machine import LotStateMachine
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import LotAggregate
from tradeflow.models.payment import PaymentWorkflow
from tradeflow.notifications import outcome, transition
from tradeflow.offers.arbiter import commit, load_aggregate
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import payment_key
from tradeflow.persistence.transaction import LedgerView

logger = structlog.get_logger(__name__)


class PaymentWorkflowEngine:
    """Enforces phase order and separation of duties for payments."""

    def __init__(self) -> None:
        self._lots = LotStateMachine()

    def request(self, view: LedgerView, actor_id: str, lot_id: str, now: datetime) -> dict[str, Any]:
        aggregate = load_aggregate(view, lot_id)
        acceptance = aggregate.acceptance
        if acceptance is None:
            raise InvalidLotState(
                f"Lot {lot_id} has no accepted offer to pay for",
                {"lot_id": lot_id, "phase": aggregate.lot.phase.value},
            )
        self._require_party(aggregate, actor_id)

        existing = view.get(payment_key(lot_id))
        if existing is not None:
            raise AlreadyRequested(
                f"Payment for lot {lot_id} was already requested by {existing.requested_by}",
                {"lot_id": lot_id, "phase": existing.phase.value},
            )
        self._lots.require(aggregate.lot, LotPhase.OFFER_ACCEPTED, LotPhase.DISPATCH_SCHEDULED)

        payment = PaymentWorkflow(
            lot_id=lot_id,
            offer_id=acceptance.offer_id,
            requested_by=actor_id,
            requested_utc=now,
        )
        view.put(payment_key(lot_id), payment)
        return outcome(
            payment.to_dict(),
            transition(
                EventKind.PAYMENT_REQUESTED, lot_id, acceptance.parties,
                requested_by=actor_id,
            ),
        )

    def confirm(self, view: LedgerView, actor_id: str, lot_id: str, now: datetime) -> dict[str, Any]:
        aggregate = load_aggregate(view, lot_id)
        payment = self._require_payment(view, lot_id)
        self._require_party(aggregate, actor_id)
        if actor_id == payment.requested_by:
            raise SameParty(
                f"{actor_id} requested this payment and cannot also confirm it",
                {"lot_id": lot_id, "requested_by": payment.requested_by},
            )
        if payment.confirmed:
            return outcome(payment.to_dict())

        payment.confirmed_by = actor_id
        payment.confirmed_utc = now
        view.put(payment_key(lot_id), payment)
        return outcome(
            payment.to_dict(),
            transition(
                EventKind.PAYMENT_CONFIRMED, lot_id, aggregate.acceptance.parties,
                confirmed_by=actor_id,
            ),
        )

    def validate(self, view: LedgerView, actor_id: str, lot_id: str, now: datetime) -> dict[str, Any]:
        aggregate = load_aggregate(view, lot_id)
        payment = self._require_payment(view, lot_id)
        if not payment.confirmed:
            raise NotConfirmed(
                f"Payment for lot {lot_id} has not been confirmed by the counter-party",
                {"lot_id": lot_id, "phase": payment.phase.value},
            )
        if actor_id != payment.requested_by:
            raise NotAuthorized(
                f"Only the original requester ({payment.requested_by}) may validate",
                {"lot_id": lot_id, "requested_by": payment.requested_by},
            )
        if payment.validated:
            return outcome({"payment": payment.to_dict(), "lot": aggregate.lot.to_dict()})

        payment.validated_by = actor_id
        payment.validated_utc = now
        self._lots.transition(aggregate.lot, LotPhase.SETTLED, now)
        view.put(payment_key(lot_id), payment)
        commit(view, aggregate)
        logger.info("lot.settled", lot_id=lot_id, offer_id=payment.offer_id)
        return outcome(
            {"payment": payment.to_dict(), "lot": aggregate.lot.to_dict()},
            transition(
                EventKind.PAYMENT_VALIDATED, lot_id,
                [*aggregate.acceptance.parties, aggregate.lot.custodian_id],
                validated_by=actor_id,
                settled=True,
            ),
        )

    @staticmethod
    def _require_payment(view: LedgerView, lot_id: str) -> PaymentWorkflow:
        payment = view.get(payment_key(lot_id))
        if payment is None:
            raise NotRequested(
                f"No payment has been requested for lot {lot_id}",
                {"lot_id": lot_id, "phase": "none"},
            )
        return payment

    @staticmethod
    def _require_party(aggregate: LotAggregate, actor_id: str) -> None:
        if not aggregate.is_trading_party(actor_id):
            raise NotAuthorized(
                f"{actor_id} is not a party to the accepted offer on lot {aggregate.lot_id}",
                {"lot_id": aggregate.lot_id},
            )
