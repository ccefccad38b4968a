"""Shared fixtures: policy, a controllable clock, and a settlement service
pre-populated with counter-parties in two counties."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest

from tradeflow.audience.directory import ParticipantRole
from tradeflow.context import RequestContext
from tradeflow.models.offer import DistributionMode, OfferTerms
from tradeflow.models.requests import (
    AcceptOfferRequest,
    AuthorizeLotRequest,
    CreateOfferRequest,
    RegisterLotRequest,
)
from tradeflow.policy.resolver import PolicyResolver
from tradeflow.service import ServiceResult, SettlementService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CUSTODIAN = "custodian-1"
OWNER = "owner-a"
EXPORTER_B = "exporter-b"
EXPORTER_C = "exporter-c"
EXPORTER_D = "exporter-d"
FAR_EXPORTER = "exporter-far"


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


_keys = itertools.count(1)


def ctx(actor_id: str, key: Optional[str] = None) -> RequestContext:
    return RequestContext(actor_id=actor_id, idempotency_key=key)


def keyed(actor_id: str) -> RequestContext:
    """Context with a fresh idempotency key."""
    return RequestContext(actor_id=actor_id, idempotency_key=f"key-{next(_keys)}")


def terms(price: str = "500", validity_days: Optional[int] = 7) -> OfferTerms:
    return OfferTerms(
        price_per_unit=Decimal(price),
        delivery_terms="FOB Mombasa",
        payment_terms="Bank transfer within 5 days",
        validity_days=validity_days,
    )


class Workflow:
    """Drives a service through the common setup steps."""

    def __init__(self, service: SettlementService) -> None:
        self.service = service

    def register_lot(self, weight: str = "1000", owner: str = OWNER) -> str:
        result = self.service.register_lot(ctx(CUSTODIAN), RegisterLotRequest(
            commodity_type="cocoa",
            weight=Decimal(weight),
            unit="kg",
            owner_id=owner,
            county="Nakuru",
            quality_grade="A",
            origin={"farm": "Kabarak"},
        ))
        assert result.success, result.errors
        return result.data["lot_id"]

    def authorized_lot(self) -> str:
        lot_id = self.register_lot()
        result = self.service.authorize_lot(ctx(CUSTODIAN), AuthorizeLotRequest(lot_id))
        assert result.success, result.errors
        return lot_id

    def broadcast(self, lot_id: str, **overrides: object) -> list[dict]:
        request = CreateOfferRequest(
            lot_id=lot_id,
            distribution=DistributionMode.BROADCAST_COUNTY,
            terms=overrides.pop("terms", terms()),
            scope_value=overrides.pop("scope_value", "Nakuru"),
        )
        result = self.service.create_offer(ctx(OWNER), request)
        assert result.success, result.errors
        return result.data["offers"]

    def direct(self, lot_id: str, target: str = EXPORTER_B, **overrides: object) -> dict:
        result = self.service.create_offer(ctx(OWNER), CreateOfferRequest(
            lot_id=lot_id,
            distribution=DistributionMode.DIRECT,
            terms=overrides.pop("terms", terms()),
            target_counterparty_id=target,
        ))
        assert result.success, result.errors
        return result.data["offers"][0]

    def accept(self, offer: dict) -> ServiceResult:
        return self.service.accept_offer(
            keyed(offer["counterparty_id"]), AcceptOfferRequest(offer["offer_id"]),
        )

    def accepted_lot(self) -> tuple[str, dict]:
        """A lot whose direct offer to exporter-b has been accepted."""
        lot_id = self.authorized_lot()
        offer = self.direct(lot_id)
        result = self.accept(offer)
        assert result.success, result.errors
        return lot_id, result.data


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


def populate_directory(service: SettlementService) -> None:
    for actor_id in (EXPORTER_B, EXPORTER_C, EXPORTER_D):
        service.register_participant(actor_id, ParticipantRole.EXPORTER, "Nakuru", ["cocoa"])
    service.register_participant(FAR_EXPORTER, ParticipantRole.EXPORTER, "Kisumu", ["tea"])
    service.register_participant("buyer-x", ParticipantRole.BUYER, "Nakuru", ["cocoa"])
    service.register_participant(CUSTODIAN, ParticipantRole.CUSTODIAN, "Nakuru")


@pytest.fixture
def service(resolver: PolicyResolver, clock: FixedClock) -> SettlementService:
    svc = SettlementService(resolver, clock=clock)
    populate_directory(svc)
    return svc


@pytest.fixture
def workflow(service: SettlementService) -> Workflow:
    return Workflow(service)
