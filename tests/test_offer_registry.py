"""Tests for offer creation, fan-out, withdrawal, rejection and expiry."""

from datetime import timedelta
from decimal import Decimal

import pytest

from tradeflow.audience.directory import ParticipantRole
from tradeflow.errors import ErrorKind
from tradeflow.models.lot import LotPhase
from tradeflow.models.offer import DistributionMode, OfferStatus
from tradeflow.models.requests import (
    CounterDecision,
    CreateOfferRequest,
    ProposeCounterRequest,
    RejectOfferRequest,
    RespondCounterRequest,
    WithdrawOfferRequest,
)
from tradeflow.service import ServiceResult, SettlementService

from conftest import (
    CUSTODIAN,
    EXPORTER_B,
    EXPORTER_C,
    EXPORTER_D,
    FAR_EXPORTER,
    OWNER,
    T0,
    FixedClock,
    Workflow,
    ctx,
    terms,
)


def _create(
    service: SettlementService,
    lot_id: str,
    distribution: DistributionMode,
    actor: str = OWNER,
    **kwargs: object,
) -> ServiceResult:
    return service.create_offer(ctx(actor), CreateOfferRequest(
        lot_id=lot_id,
        distribution=distribution,
        terms=kwargs.pop("terms", terms()),
        **kwargs,
    ))


class TestCreateOffer:
    def test_direct_offer_opens_round(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        offer = workflow.direct(lot_id)

        assert offer["counterparty_id"] == EXPORTER_B
        assert offer["status"] == "open"
        assert offer["offer_round"] == 1
        assert offer["broadcast_group_id"] is None
        lot = workflow.service.get_lot(lot_id)
        assert lot.phase == LotPhase.OFFER_OPEN
        assert lot.offer_round == 1

    def test_default_validity_applied(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        offer = workflow.direct(lot_id, terms=terms(validity_days=None))
        assert offer["terms"]["validity_days"] == 7
        stored = workflow.service.get_offer(offer["offer_id"])
        assert stored.expires_utc == T0 + timedelta(days=7)

    @pytest.mark.parametrize("days", [0, 91])
    def test_validity_bounds_enforced(self, workflow: Workflow, days: int) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            terms=terms(validity_days=days), target_counterparty_id=EXPORTER_B,
        )
        assert result.error_kind == ErrorKind.VALIDATION
        assert workflow.service.get_lot(lot_id).phase == LotPhase.AUTHORIZED

    def test_shape_errors_caught_before_ledger(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            terms=terms(price="0"),
        )
        assert result.error_kind == ErrorKind.VALIDATION
        assert "Price per unit must be positive" in result.errors
        assert "Direct offers require a target counter-party" in result.errors

    @pytest.mark.parametrize("price", ["NaN", "Infinity"])
    def test_non_finite_price_rejected(self, workflow: Workflow, price: str) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            terms=terms(price=price), target_counterparty_id=EXPORTER_B,
        )
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.errors == ["Price per unit must be positive"]
        assert workflow.service.get_offers_for_lot(lot_id) == []
        assert workflow.service.get_lot(lot_id).phase == LotPhase.AUTHORIZED

    def test_stranger_cannot_offer(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT, actor=EXPORTER_C,
            target_counterparty_id=EXPORTER_B,
        )
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED

    def test_lot_must_be_authorized(self, workflow: Workflow) -> None:
        lot_id = workflow.register_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            target_counterparty_id=EXPORTER_B,
        )
        assert result.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_one_round_at_a_time(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        workflow.direct(lot_id)
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            target_counterparty_id=EXPORTER_C,
        )
        assert result.error_kind == ErrorKind.INVALID_LOT_STATE

    def test_direct_offer_cannot_target_lot_parties(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.DIRECT,
            actor=CUSTODIAN, target_counterparty_id=OWNER,
        )
        assert result.error_kind == ErrorKind.VALIDATION

    def test_unknown_lot(self, service: SettlementService) -> None:
        result = _create(
            service, "CUSTODY-20260302-NONE", DistributionMode.DIRECT,
            target_counterparty_id=EXPORTER_B,
        )
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestBroadcastScopes:
    def test_county_scope_defaults_to_lot_county(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(workflow.service, lot_id, DistributionMode.BROADCAST_COUNTY)
        offers = result.data["offers"]
        assert sorted(o["counterparty_id"] for o in offers) == [EXPORTER_B, EXPORTER_C, EXPORTER_D]
        assert {o["scope_value"] for o in offers} == {"Nakuru"}

    def test_commodity_scope_defaults_to_lot_commodity(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(workflow.service, lot_id, DistributionMode.BROADCAST_COMMODITY)
        assert FAR_EXPORTER not in [o["counterparty_id"] for o in result.data["offers"]]

    def test_nationwide_scope(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(workflow.service, lot_id, DistributionMode.BROADCAST_ALL)
        recipients = sorted(o["counterparty_id"] for o in result.data["offers"])
        assert recipients == [EXPORTER_B, EXPORTER_C, EXPORTER_D, FAR_EXPORTER]

    def test_custodian_broadcast_skips_owner(self, workflow: Workflow) -> None:
        workflow.service.register_participant(OWNER, ParticipantRole.EXPORTER, "Nakuru", ["cocoa"])
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.BROADCAST_COUNTY, actor=CUSTODIAN,
        )
        recipients = [o["counterparty_id"] for o in result.data["offers"]]
        assert OWNER not in recipients
        assert CUSTODIAN not in recipients

    def test_empty_audience_rejected(self, workflow: Workflow) -> None:
        lot_id = workflow.authorized_lot()
        result = _create(
            workflow.service, lot_id, DistributionMode.BROADCAST_COUNTY,
            scope_value="Mombasa",
        )
        assert result.error_kind == ErrorKind.VALIDATION
        assert workflow.service.get_lot(lot_id).phase == LotPhase.AUTHORIZED
        assert workflow.service.get_offers_for_lot(lot_id) == []


class TestWithdrawOffer:
    def test_withdraw_closes_whole_group(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        offers = workflow.broadcast(lot_id)

        result = service.withdraw_offer(ctx(OWNER), WithdrawOfferRequest(offers[0]["offer_id"]))

        assert result.success, result.errors
        assert sorted(result.data["withdrawn"]) == sorted(o["offer_id"] for o in offers)
        assert {o.status for o in service.get_offers_for_lot(lot_id)} == {OfferStatus.EXPIRED}
        assert service.get_lot(lot_id).phase == LotPhase.AUTHORIZED

    def test_only_originator_withdraws(self, workflow: Workflow) -> None:
        offer = workflow.direct(workflow.authorized_lot())
        result = workflow.service.withdraw_offer(
            ctx(EXPORTER_B), WithdrawOfferRequest(offer["offer_id"]),
        )
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED

    def test_closed_offer_cannot_be_withdrawn(self, workflow: Workflow) -> None:
        lot_id, accepted = workflow.accepted_lot()
        result = workflow.service.withdraw_offer(
            ctx(OWNER), WithdrawOfferRequest(accepted["offer"]["offer_id"]),
        )
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert workflow.service.get_lot(lot_id).phase == LotPhase.OFFER_ACCEPTED

    def test_withdrawal_closes_pending_counter(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        offer = workflow.direct(lot_id)
        proposed = service.propose_counter(
            ctx(EXPORTER_B), ProposeCounterRequest(offer["offer_id"], Decimal("450")),
        )
        counter_id = proposed.data["counter"]["counter_id"]

        service.withdraw_offer(ctx(OWNER), WithdrawOfferRequest(offer["offer_id"]))

        late = service.respond_counter(
            ctx(OWNER), RespondCounterRequest(counter_id, CounterDecision.ACCEPT),
        )
        assert late.error_kind == ErrorKind.INVALID_STATE
        assert service.get_lot(lot_id).phase == LotPhase.AUTHORIZED


class TestRejectOffer:
    def test_round_continues_while_siblings_open(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        offers = {o["counterparty_id"]: o for o in workflow.broadcast(lot_id)}

        result = service.reject_offer(
            ctx(EXPORTER_B), RejectOfferRequest(offers[EXPORTER_B]["offer_id"], "Too dear"),
        )

        assert result.success, result.errors
        assert result.data["round_ended"] is False
        assert result.data["offer"]["close_reason"] == "Too dear"
        assert service.get_lot(lot_id).phase == LotPhase.OFFER_OPEN

    def test_last_rejection_returns_lot_to_authorized(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        offers = workflow.broadcast(lot_id)

        results = [
            service.reject_offer(
                ctx(o["counterparty_id"]), RejectOfferRequest(o["offer_id"], "No capacity"),
            )
            for o in offers
        ]

        assert results[-1].data["round_ended"] is True
        assert service.get_lot(lot_id).phase == LotPhase.AUTHORIZED

    def test_fresh_round_after_rejection(self, workflow: Workflow) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        first = workflow.direct(lot_id)
        service.reject_offer(ctx(EXPORTER_B), RejectOfferRequest(first["offer_id"], "Grade"))

        second = workflow.direct(lot_id, target=EXPORTER_C)

        assert second["offer_id"] != first["offer_id"]
        assert second["offer_round"] == 2
        assert service.get_offer(first["offer_id"]).status == OfferStatus.REJECTED

    def test_reason_required(self, workflow: Workflow) -> None:
        offer = workflow.direct(workflow.authorized_lot())
        result = workflow.service.reject_offer(
            ctx(EXPORTER_B), RejectOfferRequest(offer["offer_id"], "  "),
        )
        assert result.error_kind == ErrorKind.VALIDATION

    def test_only_recipient_rejects(self, workflow: Workflow) -> None:
        offer = workflow.direct(workflow.authorized_lot())
        result = workflow.service.reject_offer(
            ctx(EXPORTER_C), RejectOfferRequest(offer["offer_id"], "Not mine"),
        )
        assert result.error_kind == ErrorKind.NOT_AUTHORIZED


class TestExpireStaleOffers:
    def test_sweep_expires_lapsed_round(self, workflow: Workflow, clock: FixedClock) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        offers = workflow.broadcast(lot_id)
        clock.advance(days=8)

        result = service.expire_stale_offers(ctx("scheduler"))

        assert result.success, result.errors
        assert sorted(result.data["expired"]) == sorted(o["offer_id"] for o in offers)
        assert result.data["lots_returned"] == [lot_id]
        assert service.get_lot(lot_id).phase == LotPhase.AUTHORIZED
        kinds = [e.event_kind.value for e in service.history_for_lot(lot_id)]
        assert kinds[-1] == "offers_expired"

    def test_sweep_is_idempotent(self, workflow: Workflow, clock: FixedClock) -> None:
        service = workflow.service
        workflow.broadcast(workflow.authorized_lot())
        clock.advance(days=8)
        service.expire_stale_offers(ctx("scheduler"))

        again = service.expire_stale_offers(ctx("scheduler"))

        assert again.success
        assert again.data == {"expired": [], "lots_returned": []}

    def test_live_offers_untouched(self, workflow: Workflow, clock: FixedClock) -> None:
        service = workflow.service
        lot_id = workflow.authorized_lot()
        workflow.direct(lot_id, terms=terms(validity_days=14))
        clock.advance(days=8)

        result = service.expire_stale_offers(ctx("scheduler"))

        assert result.data["expired"] == []
        assert service.get_lot(lot_id).phase == LotPhase.OFFER_OPEN

    def test_accepted_lot_ignored(self, workflow: Workflow, clock: FixedClock) -> None:
        lot_id, _ = workflow.accepted_lot()
        clock.advance(days=30)
        result = workflow.service.expire_stale_offers(ctx("scheduler"))
        assert result.data["expired"] == []
        assert workflow.service.get_lot(lot_id).phase == LotPhase.OFFER_ACCEPTED
