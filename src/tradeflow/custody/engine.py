"""Custody engine — lots from warehouse receipt to sale authorization and archive.

    register → (assess fees → record payments) → authorize → ... → archive

The custodian who registers a lot is the only actor who may assess its
storage fees, record fee payments, authorize it for sale and archive it.
A lot with outstanding fees cannot be authorized. Archival is the final
step after settlement and a confirmed dispatch.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from tradeflow.errors import InvalidLotState, NotAuthorized
from tradeflow.identifiers import IdentifierFactory
from tradeflow.lifecycle.state_machine import LotStateMachine
from tradeflow.models.lot import CustodyLot, LotPhase, StorageFees
from tradeflow.models.offer import LotAggregate
from tradeflow.models.requests import (
    AssessFeesRequest,
    RecordFeePaymentRequest,
    RegisterLotRequest,
)
from tradeflow.notifications import outcome, transition
from tradeflow.offers.arbiter import commit, load_aggregate
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import dispatch_key, lot_key
from tradeflow.persistence.transaction import LedgerView
from tradeflow.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_CENT = Decimal("0.01")


class CustodyEngine:
    """Lot registration, storage fees, sale authorization and archival."""

    def __init__(self, resolver: PolicyResolver, ids: IdentifierFactory) -> None:
        self._resolver = resolver
        self._ids = ids
        self._lots = LotStateMachine()

    def register(
        self,
        view: LedgerView,
        custodian_id: str,
        request: RegisterLotRequest,
        now: datetime,
    ) -> dict[str, Any]:
        lot_id = self._ids.new_unique_id(
            "lot", now, lambda candidate: view.exists(lot_key(candidate)),
        )
        lot = CustodyLot(
            lot_id=lot_id,
            commodity_type=request.commodity_type.strip(),
            weight=request.weight,
            unit=request.unit.strip(),
            quality_grade=request.quality_grade.strip(),
            custodian_id=custodian_id,
            owner_id=request.owner_id.strip(),
            county=request.county.strip(),
            registered_utc=now,
            origin=dict(request.origin),
        )
        commit(view, LotAggregate(lot=lot))
        return outcome(
            lot.to_dict(),
            transition(
                EventKind.LOT_REGISTERED, lot_id, [custodian_id, lot.owner_id],
                commodity_type=lot.commodity_type,
                weight=str(lot.weight),
                unit=lot.unit,
            ),
        )

    def assess_fees(
        self,
        view: LedgerView,
        actor_id: str,
        request: AssessFeesRequest,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate = self._load_as_custodian(view, actor_id, request.lot_id)
        lot = aggregate.lot
        self._lots.require(lot, LotPhase.IN_CUSTODY, LotPhase.FEES_DUE)

        rate = self._resolver.storage_daily_rate()
        amount = (rate * request.days_stored * lot.weight).quantize(_CENT, ROUND_HALF_UP)
        paid = lot.fees.amount_paid if lot.fees else Decimal("0")
        references = list(lot.fees.payment_references) if lot.fees else []
        lot.fees = StorageFees(
            daily_rate=rate,
            days_stored=request.days_stored,
            amount_due=amount,
            currency=self._resolver.fee_currency(),
            assessed_utc=now,
            amount_paid=paid,
            payment_references=references,
        )
        if lot.fees.settled:
            lot.fees.paid_utc = now
        elif lot.phase == LotPhase.IN_CUSTODY:
            self._lots.transition(lot, LotPhase.FEES_DUE, now)
        commit(view, aggregate)
        return outcome(
            lot.to_dict(),
            transition(
                EventKind.FEES_ASSESSED, lot.lot_id, [actor_id, lot.owner_id],
                amount_due=str(amount),
                currency=lot.fees.currency,
            ),
        )

    def record_fee_payment(
        self,
        view: LedgerView,
        actor_id: str,
        request: RecordFeePaymentRequest,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate = self._load_as_custodian(view, actor_id, request.lot_id)
        lot = aggregate.lot
        if lot.fees is None:
            raise InvalidLotState(
                f"No storage fees have been assessed for lot {lot.lot_id}",
                {"lot_id": lot.lot_id, "phase": lot.phase.value},
            )
        self._lots.require(lot, LotPhase.FEES_DUE)

        lot.fees.amount_paid += request.amount
        lot.fees.payment_references.append(request.reference.strip())
        if lot.fees.settled and lot.fees.paid_utc is None:
            lot.fees.paid_utc = now
        commit(view, aggregate)
        return outcome(
            lot.to_dict(),
            transition(
                EventKind.FEE_PAYMENT_RECORDED, lot.lot_id, [actor_id, lot.owner_id],
                amount=str(request.amount),
                outstanding=str(lot.fees.outstanding),
            ),
        )

    def authorize(
        self,
        view: LedgerView,
        actor_id: str,
        lot_id: str,
        now: datetime,
        notes: str = "",
    ) -> dict[str, Any]:
        aggregate = self._load_as_custodian(view, actor_id, lot_id)
        lot = aggregate.lot
        self._lots.require(lot, LotPhase.IN_CUSTODY, LotPhase.FEES_DUE)
        if lot.fees is not None and not lot.fees.settled:
            raise InvalidLotState(
                f"Lot {lot_id} has {lot.fees.outstanding} {lot.fees.currency} "
                f"in storage fees outstanding",
                {
                    "lot_id": lot_id,
                    "phase": lot.phase.value,
                    "outstanding": str(lot.fees.outstanding),
                },
            )

        self._lots.transition(lot, LotPhase.AUTHORIZED, now)
        lot.authorized_by = actor_id
        commit(view, aggregate)
        return outcome(
            lot.to_dict(),
            transition(
                EventKind.LOT_AUTHORIZED, lot_id, [actor_id, lot.owner_id],
                notes=notes.strip(),
            ),
        )

    def archive(
        self,
        view: LedgerView,
        actor_id: str,
        lot_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate = self._load_as_custodian(view, actor_id, lot_id)
        lot = aggregate.lot
        if lot.archived:
            return outcome(lot.to_dict())
        self._lots.require(lot, LotPhase.SETTLED)
        book = view.get(dispatch_key(lot_id))
        if book is None or not book.has_confirmed():
            raise InvalidLotState(
                f"Lot {lot_id} cannot be archived before dispatch is confirmed",
                {"lot_id": lot_id, "phase": lot.phase.value},
            )

        lot.archived_utc = now
        commit(view, aggregate)
        return outcome(
            lot.to_dict(),
            transition(EventKind.LOT_ARCHIVED, lot_id, [actor_id, lot.owner_id]),
        )

    @staticmethod
    def _load_as_custodian(view: LedgerView, actor_id: str, lot_id: str) -> LotAggregate:
        aggregate = load_aggregate(view, lot_id)
        if actor_id != aggregate.lot.custodian_id:
            raise NotAuthorized(
                f"Only the custodian of lot {lot_id} may do this",
                {"lot_id": lot_id},
            )
        return aggregate
