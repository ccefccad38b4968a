"""Typed request variants — one per workflow operation.

Requests are validated at the service boundary before anything reaches
the ledger. validate() checks shape only (presence, sign, required
pairs); rules that depend on stored state or policy belong to the engines.

Each request exposes a fingerprint used to detect idempotency-key reuse
across different requests.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Optional

from tradeflow.models.offer import DistributionMode, OfferTerms, is_positive_amount


class CounterDecision(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (Decimal, date)):
        return str(value)
    if isinstance(value, OfferTerms):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class OperationRequest:
    """Base for all request variants."""
    operation: ClassVar[str] = ""

    def validate(self) -> list[str]:
        return []

    def fingerprint(self) -> dict[str, Any]:
        data = {f.name: _plain(getattr(self, f.name)) for f in fields(self)}
        data["operation"] = self.operation
        return data


@dataclass(frozen=True)
class LotRequest(OperationRequest):
    lot_id: str

    def validate(self) -> list[str]:
        return ["lot_id is required"] if _blank(self.lot_id) else []


# ----------------------------------------------------------------------
# Custody
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RegisterLotRequest(OperationRequest):
    operation: ClassVar[str] = "register_lot"
    commodity_type: str
    weight: Decimal
    unit: str
    owner_id: str
    county: str
    quality_grade: str = ""
    origin: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors: list[str] = []
        if _blank(self.commodity_type):
            errors.append("commodity_type is required")
        if not is_positive_amount(self.weight):
            errors.append("weight must be positive")
        if _blank(self.unit):
            errors.append("unit is required")
        if _blank(self.owner_id):
            errors.append("owner_id is required")
        if _blank(self.county):
            errors.append("county is required")
        return errors


@dataclass(frozen=True)
class AssessFeesRequest(LotRequest):
    operation: ClassVar[str] = "assess_storage_fees"
    days_stored: int = 0

    def validate(self) -> list[str]:
        errors = super().validate()
        if self.days_stored < 0:
            errors.append("days_stored cannot be negative")
        return errors


@dataclass(frozen=True)
class RecordFeePaymentRequest(LotRequest):
    operation: ClassVar[str] = "record_fee_payment"
    amount: Decimal = Decimal("0")
    reference: str = ""

    def validate(self) -> list[str]:
        errors = super().validate()
        if not is_positive_amount(self.amount):
            errors.append("amount must be positive")
        if _blank(self.reference):
            errors.append("reference is required")
        return errors


@dataclass(frozen=True)
class AuthorizeLotRequest(LotRequest):
    operation: ClassVar[str] = "authorize_lot"
    notes: str = ""


@dataclass(frozen=True)
class ArchiveLotRequest(LotRequest):
    operation: ClassVar[str] = "archive_lot"


# ----------------------------------------------------------------------
# Offers
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CreateOfferRequest(LotRequest):
    operation: ClassVar[str] = "create_offer"
    distribution: DistributionMode = DistributionMode.DIRECT
    terms: Optional[OfferTerms] = None
    target_counterparty_id: Optional[str] = None
    scope_value: Optional[str] = None

    def validate(self) -> list[str]:
        errors = super().validate()
        if self.terms is None:
            errors.append("Offer terms are required")
        else:
            if not is_positive_amount(self.terms.price_per_unit):
                errors.append("Price per unit must be positive")
            if _blank(self.terms.delivery_terms):
                errors.append("Delivery terms are required")
            if _blank(self.terms.payment_terms):
                errors.append("Payment terms are required")
        if self.distribution == DistributionMode.DIRECT:
            if _blank(self.target_counterparty_id):
                errors.append("Direct offers require a target counter-party")
        elif self.target_counterparty_id is not None:
            errors.append("Broadcast offers cannot name a single target")
        return errors


@dataclass(frozen=True)
class OfferRequest(OperationRequest):
    offer_id: str

    def validate(self) -> list[str]:
        return ["offer_id is required"] if _blank(self.offer_id) else []


@dataclass(frozen=True)
class WithdrawOfferRequest(OfferRequest):
    operation: ClassVar[str] = "withdraw_offer"


@dataclass(frozen=True)
class RejectOfferRequest(OfferRequest):
    operation: ClassVar[str] = "reject_offer"
    reason: str = ""

    def validate(self) -> list[str]:
        errors = super().validate()
        if _blank(self.reason):
            errors.append("A rejection reason is required")
        return errors


@dataclass(frozen=True)
class AcceptOfferRequest(OfferRequest):
    operation: ClassVar[str] = "accept_offer"


@dataclass(frozen=True)
class ExpireOffersRequest(OperationRequest):
    operation: ClassVar[str] = "expire_stale_offers"


# ----------------------------------------------------------------------
# Negotiation
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ProposeCounterRequest(OfferRequest):
    operation: ClassVar[str] = "propose_counter"
    price_per_unit: Decimal = Decimal("0")
    note: str = ""
    delivery_terms: Optional[str] = None
    payment_terms: Optional[str] = None

    def validate(self) -> list[str]:
        errors = super().validate()
        if not is_positive_amount(self.price_per_unit):
            errors.append("Counter price must be positive")
        if self.delivery_terms is not None and _blank(self.delivery_terms):
            errors.append("Counter delivery terms cannot be blank")
        if self.payment_terms is not None and _blank(self.payment_terms):
            errors.append("Counter payment terms cannot be blank")
        return errors


@dataclass(frozen=True)
class RespondCounterRequest(OperationRequest):
    operation: ClassVar[str] = "respond_counter"
    counter_id: str
    decision: CounterDecision
    reason: Optional[str] = None

    def validate(self) -> list[str]:
        errors: list[str] = []
        if _blank(self.counter_id):
            errors.append("counter_id is required")
        try:
            decision = CounterDecision(self.decision)
        except ValueError:
            errors.append(f"Unknown counter decision: {self.decision!r}")
            return errors
        if decision == CounterDecision.REJECT and _blank(self.reason):
            errors.append("Rejecting a counter-offer requires a reason")
        return errors


# ----------------------------------------------------------------------
# Payment
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RequestPaymentRequest(LotRequest):
    operation: ClassVar[str] = "request_payment"


@dataclass(frozen=True)
class ConfirmPaymentRequest(LotRequest):
    operation: ClassVar[str] = "confirm_payment"


@dataclass(frozen=True)
class ValidatePaymentRequest(LotRequest):
    operation: ClassVar[str] = "validate_payment"


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleDispatchRequest(LotRequest):
    operation: ClassVar[str] = "schedule_dispatch"
    pickup_date: Optional[date] = None
    address: str = ""

    def validate(self) -> list[str]:
        errors = super().validate()
        if self.pickup_date is None:
            errors.append("pickup_date is required")
        if _blank(self.address):
            errors.append("Destination address is required")
        return errors


@dataclass(frozen=True)
class DispatchActionRequest(OperationRequest):
    request_id: str

    def validate(self) -> list[str]:
        return ["request_id is required"] if _blank(self.request_id) else []


@dataclass(frozen=True)
class ConfirmDispatchRequest(DispatchActionRequest):
    operation: ClassVar[str] = "confirm_dispatch"


@dataclass(frozen=True)
class CancelDispatchRequest(DispatchActionRequest):
    operation: ClassVar[str] = "cancel_dispatch"


# ----------------------------------------------------------------------
# Verification codes
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RedeemCodeRequest(OperationRequest):
    operation: ClassVar[str] = "redeem_code"
    code: str

    def validate(self) -> list[str]:
        return ["code is required"] if _blank(self.code) else []
