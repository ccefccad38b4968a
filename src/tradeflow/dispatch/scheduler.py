"""Dispatch scheduler — pickup requests for accepted lots.

Runs independently of payment: a trading party may schedule pickup as
soon as the lot has an accepted offer, and the custodian confirms it.
Confirming moves the lot to dispatch_scheduled unless payment has
already settled it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from tradeflow.errors import (
    DuplicateRequest,
    InvalidLotState,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from tradeflow.identifiers import IdentifierFactory
from tradeflow.lifecycle.state_machine import LotStateMachine
from tradeflow.models.dispatch import DispatchBook, DispatchRequest, DispatchStatus
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import LotAggregate
from tradeflow.models.requests import ScheduleDispatchRequest
from tradeflow.notifications import outcome, transition
from tradeflow.offers.arbiter import commit, load_aggregate
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import dispatch_index_key, dispatch_key
from tradeflow.persistence.transaction import LedgerView

logger = structlog.get_logger(__name__)


class DispatchScheduler:
    """Schedules, confirms and cancels pickup requests."""

    def __init__(self, ids: IdentifierFactory) -> None:
        self._ids = ids
        self._lots = LotStateMachine()

    def schedule(
        self,
        view: LedgerView,
        actor_id: str,
        request: ScheduleDispatchRequest,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate = load_aggregate(view, request.lot_id)
        lot = aggregate.lot
        if lot.archived or not lot.phase.at_least(LotPhase.OFFER_ACCEPTED):
            raise InvalidLotState(
                f"Lot {lot.lot_id} has no accepted offer to dispatch",
                {"lot_id": lot.lot_id, "phase": lot.phase.value},
            )
        if not aggregate.is_trading_party(actor_id):
            raise NotAuthorized(
                f"Only a trading party may schedule dispatch of lot {lot.lot_id}",
                {"lot_id": lot.lot_id},
            )

        book = view.get(dispatch_key(lot.lot_id)) or DispatchBook(lot_id=lot.lot_id)
        active = book.active()
        if active is not None:
            raise DuplicateRequest(
                f"Lot {lot.lot_id} already has a {active.status.value} dispatch request",
                {"lot_id": lot.lot_id, "request_id": active.request_id},
            )
        if request.pickup_date < now.date():
            raise ValidationError(
                f"Pickup date {request.pickup_date.isoformat()} is in the past",
                {"lot_id": lot.lot_id},
            )

        request_id = self._ids.new_unique_id(
            "dispatch_request", now,
            lambda candidate: view.exists(dispatch_index_key(candidate)),
        )
        record = DispatchRequest(
            request_id=request_id,
            lot_id=lot.lot_id,
            requested_by=actor_id,
            pickup_date=request.pickup_date,
            address=request.address.strip(),
            created_utc=now,
        )
        book.requests.append(record)
        view.put(dispatch_key(lot.lot_id), book)
        view.put(dispatch_index_key(request_id), lot.lot_id)
        return outcome(
            record.to_dict(),
            transition(
                EventKind.DISPATCH_REQUESTED, lot.lot_id,
                [actor_id, *aggregate.acceptance.parties, lot.custodian_id],
                request_id=request_id,
                pickup_date=request.pickup_date.isoformat(),
            ),
        )

    def confirm(
        self,
        view: LedgerView,
        actor_id: str,
        request_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate, book, record = self._load(view, request_id)
        lot = aggregate.lot
        if actor_id != lot.custodian_id:
            raise NotAuthorized(
                f"Only the custodian of lot {lot.lot_id} may confirm dispatch",
                {"lot_id": lot.lot_id, "request_id": request_id},
            )
        if record.status == DispatchStatus.CONFIRMED:
            return outcome({"request": record.to_dict(), "lot": lot.to_dict()})
        if record.status == DispatchStatus.CANCELLED:
            raise InvalidState(
                f"Dispatch request {request_id} was cancelled",
                {"request_id": request_id, "status": record.status.value},
            )

        record.status = DispatchStatus.CONFIRMED
        record.confirmed_by = actor_id
        record.confirmed_utc = now
        view.put(dispatch_key(lot.lot_id), book)
        if self._lots.advance_to(lot, LotPhase.DISPATCH_SCHEDULED, now):
            commit(view, aggregate)
        return outcome(
            {"request": record.to_dict(), "lot": lot.to_dict()},
            transition(
                EventKind.DISPATCH_CONFIRMED, lot.lot_id,
                [actor_id, record.requested_by, *aggregate.acceptance.parties],
                request_id=request_id,
                pickup_date=record.pickup_date.isoformat(),
            ),
        )

    def cancel(
        self,
        view: LedgerView,
        actor_id: str,
        request_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        aggregate, book, record = self._load(view, request_id)
        lot = aggregate.lot
        if actor_id not in (record.requested_by, lot.custodian_id):
            raise NotAuthorized(
                f"Only the requester or custodian may cancel dispatch request {request_id}",
                {"request_id": request_id},
            )
        if record.status == DispatchStatus.CANCELLED:
            return outcome(record.to_dict())
        if record.status == DispatchStatus.CONFIRMED:
            raise InvalidState(
                f"Dispatch request {request_id} is already confirmed",
                {"request_id": request_id, "status": record.status.value},
            )

        record.status = DispatchStatus.CANCELLED
        record.cancelled_by = actor_id
        record.cancelled_utc = now
        view.put(dispatch_key(lot.lot_id), book)
        return outcome(
            record.to_dict(),
            transition(
                EventKind.DISPATCH_CANCELLED, lot.lot_id,
                [actor_id, record.requested_by, lot.custodian_id],
                request_id=request_id,
            ),
        )

    @staticmethod
    def _load(
        view: LedgerView,
        request_id: str,
    ) -> tuple[LotAggregate, DispatchBook, DispatchRequest]:
        lot_id = view.get(dispatch_index_key(request_id))
        if lot_id is None:
            raise NotFound(
                f"Dispatch request not found: {request_id}", {"request_id": request_id},
            )
        aggregate = load_aggregate(view, lot_id)
        book = view.get(dispatch_key(lot_id))
        return aggregate, book, book.get(request_id)
