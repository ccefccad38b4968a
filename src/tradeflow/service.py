"""Settlement service — unified facade for the trade-settlement workflow.

This is the primary interface for programmatic access to the core.
It orchestrates all subsystems:
- Custody (register lots, storage fees, sale authorization, archive)
- Offers (create, withdraw, reject, expire) and acceptance arbitration
- Counter-offer negotiation
- Payment workflow and dispatch scheduling
- Verification code redemption
- Persistence (ledger, history, state snapshot) and notifications

Every state-changing operation follows the same path:

1. Validate the typed request at the boundary.
2. Run the engine inside one AtomicRunner transaction (with an
   idempotency record when the caller supplied a key).
3. Append the committed transitions to history and publish them.
4. Persist the snapshot. A failed snapshot write never undoes the commit.

All operations return a ServiceResult. Business-rule failures come back
as typed results (error_kind), never as exceptions.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import structlog

from tradeflow.audience.directory import (
    CounterpartyDirectory,
    Participant,
    ParticipantRole,
    ParticipantStatus,
)
from tradeflow.codes.issuer import CodeIssuer, normalize_code
from tradeflow.context import RequestContext
from tradeflow.custody.engine import CustodyEngine
from tradeflow.dispatch.scheduler import DispatchScheduler
from tradeflow.errors import ErrorKind, SettlementError, ValidationError
from tradeflow.identifiers import IdentifierFactory
from tradeflow.models.code import VerificationCode
from tradeflow.models.dispatch import DispatchRequest
from tradeflow.models.lot import CustodyLot
from tradeflow.models.offer import Acceptance, LotAggregate, Offer
from tradeflow.models.payment import PaymentWorkflow
from tradeflow.models.requests import (
    AcceptOfferRequest,
    ArchiveLotRequest,
    AssessFeesRequest,
    AuthorizeLotRequest,
    CancelDispatchRequest,
    ConfirmDispatchRequest,
    ConfirmPaymentRequest,
    CounterDecision,
    CreateOfferRequest,
    ExpireOffersRequest,
    OperationRequest,
    ProposeCounterRequest,
    RecordFeePaymentRequest,
    RedeemCodeRequest,
    RegisterLotRequest,
    RejectOfferRequest,
    RequestPaymentRequest,
    RespondCounterRequest,
    ScheduleDispatchRequest,
    ValidatePaymentRequest,
    WithdrawOfferRequest,
)
from tradeflow.negotiation.engine import NegotiationEngine
from tradeflow.notifications import NotificationHub, TransitionEvent
from tradeflow.offers.arbiter import AcceptanceArbiter
from tradeflow.offers.registry import OfferRegistry
from tradeflow.payment.workflow import PaymentWorkflowEngine
from tradeflow.persistence.event_log import EventKind, EventRecord
from tradeflow.persistence.ledger import (
    InMemoryLedger,
    LedgerStore,
    code_key,
    dispatch_key,
    lot_key,
    offer_index_key,
    payment_key,
)
from tradeflow.persistence.state_store import StateStore
from tradeflow.persistence.transaction import AtomicRunner, IdempotencyToken, LedgerView
from tradeflow.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

Mutation = Callable[[LedgerView, datetime], dict[str, Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    replayed: bool = False


class SettlementService:
    """Trade-settlement workflow facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = SettlementService(resolver)

        service.register_participant("exporter-b", ParticipantRole.EXPORTER, "Nakuru")
        lot = service.register_lot(RequestContext("custodian-1"), RegisterLotRequest(...))
        ...
        result = service.accept_offer(
            RequestContext("exporter-b", idempotency_key="k-1"),
            AcceptOfferRequest(offer_id),
        )
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger: Optional[LedgerStore] = None,
        directory: Optional[CounterpartyDirectory] = None,
        notifier: Optional[NotificationHub] = None,
        state_store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._resolver = resolver
        self._clock = clock
        self._notifier = notifier or NotificationHub()
        self._state_store = state_store
        self._persistence_degraded: bool = False

        # Load persisted state or start fresh
        if ledger is None:
            ledger = InMemoryLedger()
        if state_store is not None and isinstance(ledger, InMemoryLedger):
            state_store.load_into(ledger)
        if directory is None:
            directory = (
                state_store.load_directory() if state_store is not None
                else CounterpartyDirectory()
            )
        self._ledger = ledger
        self._directory = directory
        self._runner = AtomicRunner(ledger, resolver.retry_policy())

        ids = IdentifierFactory(resolver)
        issuer = CodeIssuer(resolver)
        self._arbiter = AcceptanceArbiter(ids, issuer)
        self._issuer = issuer
        self._custody = CustodyEngine(resolver, ids)
        self._registry = OfferRegistry(resolver, ids, directory)
        self._negotiation = NegotiationEngine(ids, self._arbiter)
        self._payments = PaymentWorkflowEngine()
        self._dispatch = DispatchScheduler(ids)

        self._history_lock = threading.Lock()
        self._event_seq = itertools.count(len(ledger.history()) + 1)

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    @property
    def notifier(self) -> NotificationHub:
        return self._notifier

    @property
    def directory(self) -> CounterpartyDirectory:
        return self._directory

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def register_participant(
        self,
        actor_id: str,
        role: ParticipantRole,
        county: str,
        commodities: Iterable[str] = (),
        status: ParticipantStatus = ParticipantStatus.ACTIVE,
    ) -> ServiceResult:
        """Register or update a counter-party for broadcast fan-out."""
        participant = Participant(
            actor_id=actor_id,
            role=role,
            county=county,
            commodities=frozenset(commodities),
            status=status,
        )
        try:
            self._directory.register(participant)
        except ValueError as e:
            return ServiceResult(
                success=False, errors=[str(e)], error_kind=ErrorKind.VALIDATION,
            )

        data: dict[str, Any] = {
            "actor_id": participant.actor_id,
            "role": role.value,
            "county": participant.county,
            "commodities": sorted(participant.commodities),
        }
        warning = self._safe_persist(directory=True)
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Custody
    # ------------------------------------------------------------------

    def register_lot(self, ctx: RequestContext, request: RegisterLotRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._custody.register(view, ctx.actor_id, request, now),
        )

    def assess_storage_fees(self, ctx: RequestContext, request: AssessFeesRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._custody.assess_fees(view, ctx.actor_id, request, now),
        )

    def record_fee_payment(
        self, ctx: RequestContext, request: RecordFeePaymentRequest,
    ) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._custody.record_fee_payment(view, ctx.actor_id, request, now),
        )

    def authorize_lot(self, ctx: RequestContext, request: AuthorizeLotRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._custody.authorize(
                view, ctx.actor_id, request.lot_id, now, request.notes,
            ),
        )

    def archive_lot(self, ctx: RequestContext, request: ArchiveLotRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._custody.archive(view, ctx.actor_id, request.lot_id, now),
        )

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def create_offer(self, ctx: RequestContext, request: CreateOfferRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._registry.create(view, ctx.actor_id, request, now),
        )

    def withdraw_offer(self, ctx: RequestContext, request: WithdrawOfferRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._registry.withdraw(view, ctx.actor_id, request.offer_id, now),
        )

    def reject_offer(self, ctx: RequestContext, request: RejectOfferRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._registry.reject(
                view, ctx.actor_id, request.offer_id, request.reason, now,
            ),
        )

    def accept_offer(self, ctx: RequestContext, request: AcceptOfferRequest) -> ServiceResult:
        """Claim an offer. Losing a race returns error_kind=already_taken."""
        return self._execute(
            ctx, request,
            lambda view, now: self._arbiter.accept(view, ctx.actor_id, request.offer_id, now),
        )

    def expire_stale_offers(
        self,
        ctx: RequestContext,
        request: Optional[ExpireOffersRequest] = None,
    ) -> ServiceResult:
        """Sweep every lot for lapsed open offers.

        Each lot is expired in its own transaction, so a sweep running
        alongside acceptances only ever loses races, never corrupts them.
        """
        request = request or ExpireOffersRequest()
        now = ctx.now or self._clock()
        log = logger.bind(operation=request.operation, request_id=ctx.request_id)

        expired: list[str] = []
        returned: list[str] = []
        errors: list[str] = []
        for key in self._ledger.keys("lot:"):
            lot_id = key.split(":", 1)[1]
            try:
                committed = self._runner.run(
                    lambda view: self._registry.expire_lot(view, lot_id, now),
                )
            except SettlementError as e:
                log.warning("offers.expiry_failed", lot_id=lot_id, error_kind=e.kind.value)
                errors.append(f"{lot_id}: {e.message}")
                continue
            result = committed.payload["result"]
            if result["expired"]:
                expired.extend(result["expired"])
                if result["phase"] == "authorized":
                    returned.append(lot_id)
                self._record(ctx, request.operation, committed.payload, now)

        data: dict[str, Any] = {"expired": expired, "lots_returned": returned}
        warning = self._safe_persist() if expired else None
        if warning:
            data["warning"] = warning
        if errors:
            return ServiceResult(
                success=False,
                errors=errors,
                data=data,
                error_kind=ErrorKind.TRANSIENT_STORE_ERROR,
            )
        log.info("offers.sweep_complete", expired=len(expired))
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    def propose_counter(self, ctx: RequestContext, request: ProposeCounterRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._negotiation.propose(view, ctx.actor_id, request, now),
        )

    def respond_counter(self, ctx: RequestContext, request: RespondCounterRequest) -> ServiceResult:
        def mutate(view: LedgerView, now: datetime) -> dict[str, Any]:
            decision = CounterDecision(request.decision)
            if decision == CounterDecision.ACCEPT:
                return self._negotiation.accept(view, ctx.actor_id, request.counter_id, now)
            if decision == CounterDecision.REJECT:
                return self._negotiation.reject(
                    view, ctx.actor_id, request.counter_id, request.reason or "", now,
                )
            raise ValidationError(f"Unknown counter decision: {request.decision!r}")

        return self._execute(ctx, request, mutate)

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def request_payment(self, ctx: RequestContext, request: RequestPaymentRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._payments.request(view, ctx.actor_id, request.lot_id, now),
        )

    def confirm_payment(self, ctx: RequestContext, request: ConfirmPaymentRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._payments.confirm(view, ctx.actor_id, request.lot_id, now),
        )

    def validate_payment(
        self, ctx: RequestContext, request: ValidatePaymentRequest,
    ) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._payments.validate(view, ctx.actor_id, request.lot_id, now),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def schedule_dispatch(
        self, ctx: RequestContext, request: ScheduleDispatchRequest,
    ) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._dispatch.schedule(view, ctx.actor_id, request, now),
        )

    def confirm_dispatch(self, ctx: RequestContext, request: ConfirmDispatchRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._dispatch.confirm(view, ctx.actor_id, request.request_id, now),
        )

    def cancel_dispatch(self, ctx: RequestContext, request: CancelDispatchRequest) -> ServiceResult:
        return self._execute(
            ctx, request,
            lambda view, now: self._dispatch.cancel(view, ctx.actor_id, request.request_id, now),
        )

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    def redeem_code(self, ctx: RequestContext, request: RedeemCodeRequest) -> ServiceResult:
        """Consume a verification code. Repeat redemptions return the same record."""
        return self._execute(
            ctx, request,
            lambda view, now: self._issuer.redeem(view, ctx.actor_id, request.code, now),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_lot(self, lot_id: str) -> Optional[CustodyLot]:
        """Retrieve a lot by ID."""
        aggregate = self._aggregate(lot_id)
        return aggregate.lot if aggregate else None

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        lot_id = self._runner.read(offer_index_key(offer_id))
        if lot_id is None:
            return None
        aggregate = self._aggregate(lot_id)
        return aggregate.offers.get(offer_id) if aggregate else None

    def get_offers_for_lot(self, lot_id: str) -> list[Offer]:
        """All offers ever made against the lot, oldest first."""
        aggregate = self._aggregate(lot_id)
        if aggregate is None:
            return []
        return sorted(aggregate.offers.values(), key=lambda o: (o.created_utc, o.offer_id))

    def get_acceptance(self, lot_id: str) -> Optional[Acceptance]:
        aggregate = self._aggregate(lot_id)
        return aggregate.acceptance if aggregate else None

    def get_payment(self, lot_id: str) -> Optional[PaymentWorkflow]:
        return self._runner.read(payment_key(lot_id))

    def get_dispatch_requests(self, lot_id: str) -> list[DispatchRequest]:
        book = self._runner.read(dispatch_key(lot_id))
        return list(book.requests) if book else []

    def get_code(self, code: str) -> Optional[VerificationCode]:
        return self._runner.read(code_key(normalize_code(code)))

    def history_for_lot(self, lot_id: str) -> list[EventRecord]:
        return [e for e in self._ledger.history() if e.lot_id == lot_id]

    def _aggregate(self, lot_id: str) -> Optional[LotAggregate]:
        return self._runner.read(lot_key(lot_id))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute(
        self,
        ctx: RequestContext,
        request: OperationRequest,
        mutate: Mutation,
    ) -> ServiceResult:
        """Validate, run atomically, then record, notify and persist."""
        operation = request.operation
        log = logger.bind(
            operation=operation, actor_id=ctx.actor_id, request_id=ctx.request_id,
        )

        errors = request.validate()
        if not (ctx.actor_id or "").strip():
            errors.insert(0, "actor_id is required")
        if (
            self._resolver.idempotency_required(operation)
            and not (ctx.idempotency_key or "").strip()
        ):
            errors.append(f"{operation} requires an idempotency key")
        if errors:
            log.info("request.invalid", errors=errors)
            return ServiceResult(
                success=False, errors=errors, error_kind=ErrorKind.VALIDATION,
            )

        token = None
        if ctx.idempotency_key:
            token = IdempotencyToken.for_request(
                operation, ctx.actor_id, ctx.idempotency_key, request.fingerprint(),
            )
        now = ctx.now or self._clock()

        try:
            committed = self._runner.run(lambda view: mutate(view, now), token)
        except SettlementError as e:
            level = log.warning if e.retryable else log.info
            level(
                "operation.refused",
                error_kind=e.kind.value,
                replayed=e.replayed,
                details=e.details,
            )
            return ServiceResult(
                success=False,
                errors=[e.message],
                data=dict(e.details),
                error_kind=e.kind,
                replayed=e.replayed,
            )

        if committed.replayed:
            log.info("operation.replayed")
        else:
            self._record(ctx, operation, committed.payload, now)

        data = dict(committed.payload["result"])
        warning = self._safe_persist()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data, replayed=committed.replayed)

    def _record(
        self,
        ctx: RequestContext,
        operation: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        """Append committed transitions to history, then publish them."""
        for item in payload["transitions"]:
            record = EventRecord.create(
                event_id=self._next_event_id(now),
                event_kind=EventKind(item["event_type"]),
                actor_id=ctx.actor_id,
                lot_id=item["lot_id"],
                payload={
                    "operation": operation,
                    "request_id": ctx.request_id,
                    "actors": item["actors"],
                    **item["payload"],
                },
                timestamp_utc=now,
            )
            try:
                self._ledger.append_history(record)
            except (OSError, ValueError) as e:
                self._persistence_degraded = True
                logger.error(
                    "history.append_failed",
                    lot_id=item["lot_id"],
                    event_kind=item["event_type"],
                    error=str(e),
                )
            logger.info(
                "transition.committed",
                lot_id=item["lot_id"],
                event_type=item["event_type"],
                operation=operation,
                actor_id=ctx.actor_id,
                request_id=ctx.request_id,
            )
            self._notifier.publish(TransitionEvent.from_transition(item, record.timestamp_utc))

    def _next_event_id(self, now: datetime) -> str:
        with self._history_lock:
            seq = next(self._event_seq)
        return f"EVT-{now:%Y%m%d}-{seq:08d}"

    def _safe_persist(self, directory: bool = False) -> Optional[str]:
        """Persist state after the ledger commit.

        MUST NOT roll back: the ledger commit is authoritative. If the
        snapshot write fails, in-memory state remains correct but the
        StateStore is stale. Sets the persistence_degraded flag and
        returns a warning string.
        """
        if self._state_store is None:
            return None
        try:
            if directory:
                self._state_store.save_directory(self._directory)
            else:
                self._state_store.save_ledger(self._ledger)
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("persistence.degraded", error=str(e))
            return f"Persistence degraded: {e}; state committed but StateStore is stale"
