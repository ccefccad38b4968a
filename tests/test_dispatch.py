"""Tests for dispatch scheduling and lot archival."""

from datetime import date, timedelta

from tradeflow.errors import ErrorKind
from tradeflow.models.dispatch import DispatchStatus
from tradeflow.models.lot import LotPhase
from tradeflow.models.requests import (
    ArchiveLotRequest,
    CancelDispatchRequest,
    ConfirmDispatchRequest,
    ConfirmPaymentRequest,
    RequestPaymentRequest,
    ScheduleDispatchRequest,
    ValidatePaymentRequest,
)
from tradeflow.service import ServiceResult, SettlementService

from conftest import CUSTODIAN, EXPORTER_B, EXPORTER_C, OWNER, T0, Workflow, ctx, keyed

TOMORROW = (T0 + timedelta(days=1)).date()


def _schedule(
    service: SettlementService,
    lot_id: str,
    actor: str = EXPORTER_B,
    pickup: date = TOMORROW,
) -> ServiceResult:
    return service.schedule_dispatch(
        ctx(actor), ScheduleDispatchRequest(lot_id, pickup, "Gate 4, Nakuru depot"),
    )


def _settle(service: SettlementService, lot_id: str) -> None:
    service.request_payment(keyed(EXPORTER_B), RequestPaymentRequest(lot_id))
    service.confirm_payment(keyed(OWNER), ConfirmPaymentRequest(lot_id))
    result = service.validate_payment(keyed(EXPORTER_B), ValidatePaymentRequest(lot_id))
    assert result.success, result.errors


class TestScheduleDispatch:
    def test_trading_party_schedules(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = _schedule(workflow.service, lot_id)

        assert result.success, result.errors
        assert result.data["status"] == "pending"
        assert result.data["pickup_date"] == TOMORROW.isoformat()
        assert workflow.service.get_lot(lot_id).phase == LotPhase.OFFER_ACCEPTED

    def test_one_active_request(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        first = _schedule(workflow.service, lot_id)
        second = _schedule(workflow.service, lot_id, actor=OWNER)

        assert second.error_kind == ErrorKind.DUPLICATE_REQUEST
        assert second.data["request_id"] == first.data["request_id"]

    def test_past_pickup_rejected(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = _schedule(workflow.service, lot_id, pickup=T0.date() - timedelta(days=1))
        assert result.error_kind == ErrorKind.VALIDATION

    def test_outsider_cannot_schedule(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = _schedule(workflow.service, lot_id, actor=EXPORTER_C)
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED

    def test_needs_accepted_offer(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _schedule(workflow.service, lot_id, actor=OWNER)
        assert result.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_missing_address(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = workflow.service.schedule_dispatch(
            ctx(EXPORTER_B), ScheduleDispatchRequest(lot_id, TOMORROW, " "),
        )
        assert result.errors == ["Destination address is required"]


class TestConfirmAndCancel:
    def test_custodian_confirms(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]

        result = service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))

        assert result.success, result.errors
        assert result.data["request"]["status"] == "confirmed"
        assert service.get_lot(lot_id).phase == LotPhase.DISPATCH_SCHEDULED

    def test_only_custodian_confirms(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]
        result = service.confirm_dispatch(ctx(EXPORTER_B), ConfirmDispatchRequest(request_id))
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED

    def test_repeat_confirm_is_noop(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]
        service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))
        events = len(service.history_for_lot(lot_id))

        again = service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))

        assert again.success
        assert len(service.history_for_lot(lot_id)) == events

    def test_cancel_then_reschedule(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        first = _schedule(service, lot_id).data["request_id"]

        cancelled = service.cancel_dispatch(ctx(EXPORTER_B), CancelDispatchRequest(first))
        second = _schedule(service, lot_id, pickup=TOMORROW + timedelta(days=2))

        assert cancelled.data["status"] == "cancelled"
        assert second.success, second.errors
        statuses = [r.status for r in service.get_dispatch_requests(lot_id)]
        assert statuses == [DispatchStatus.CANCELLED, DispatchStatus.PENDING]

    def test_confirmed_request_cannot_be_cancelled(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]
        service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))
        result = service.cancel_dispatch(ctx(EXPORTER_B), CancelDispatchRequest(request_id))
        assert result.error_kind == ErrorKind.INVALID_STATE

    def test_cancelled_request_cannot_be_confirmed(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]
        service.cancel_dispatch(ctx(CUSTODIAN), CancelDispatchRequest(request_id))
        result = service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))
        assert result.error_kind == ErrorKind.INVALID_STATE

    def test_unknown_request(self, service: SettlementService) -> None:
        result = service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest("WDR-X"))
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestDispatchAndPaymentOrder:
    def test_dispatch_first_then_payment_settles(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        request_id = _schedule(service, lot_id).data["request_id"]
        service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))

        _settle(service, lot_id)

        assert service.get_lot(lot_id).phase == LotPhase.SETTLED

    def test_payment_first_then_dispatch_keeps_settled(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        _settle(service, lot_id)
        request_id = _schedule(service, lot_id).data["request_id"]

        result = service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))

        assert result.success, result.errors
        assert service.get_lot(lot_id).phase == LotPhase.SETTLED


class TestArchiveLot:
    def test_archive_after_settlement_and_dispatch(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        _settle(service, lot_id)
        request_id = _schedule(service, lot_id).data["request_id"]
        service.confirm_dispatch(ctx(CUSTODIAN), ConfirmDispatchRequest(request_id))

        result = service.archive_lot(ctx(CUSTODIAN), ArchiveLotRequest(lot_id))
        again = service.archive_lot(ctx(CUSTODIAN), ArchiveLotRequest(lot_id))

        assert result.success, result.errors
        assert again.success
        assert again.data["archived_utc"] == result.data["archived_utc"]
        assert service.get_lot(lot_id).archived
        follow_up = _schedule(service, lot_id)
        assert follow_up.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_archive_needs_confirmed_dispatch(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id, _ = workflow.accepted_lot()
        _settle(service, lot_id)
        result = service.archive_lot(ctx(CUSTODIAN), ArchiveLotRequest(lot_id))
        assert result.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_archive_needs_settlement(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = workflow.service.archive_lot(ctx(CUSTODIAN), ArchiveLotRequest(lot_id))
        assert result.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_only_custodian_archives(self, workflow: Workflow) -> None:
        lot_id, _ = workflow.accepted_lot()
        result = workflow.service.archive_lot(ctx(OWNER), ArchiveLotRequest(lot_id))
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED
