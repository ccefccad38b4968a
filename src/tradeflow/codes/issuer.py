"""Verification code issuer — single-use proof of an acceptance event.

Codes are drawn with the secrets module from an alphabet without
look-alike characters, so they can be read over a phone line at the
warehouse gate. A code is only ever minted inside the acceptance
transaction, which makes "code without acceptance" and "acceptance
without code" unobservable.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any

import structlog

from tradeflow.errors import (
    AlreadyExpired,
    AlreadyIssued,
    InvalidState,
    NotFound,
    TransientStoreError,
)
from tradeflow.models.code import VerificationCode
from tradeflow.models.offer import LotAggregate, Offer
from tradeflow.notifications import outcome, transition
from tradeflow.persistence.event_log import EventKind
from tradeflow.persistence.ledger import code_key
from tradeflow.persistence.transaction import LedgerView
from tradeflow.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_MAX_DRAWS = 8


def normalize_code(raw: str) -> str:
    return raw.strip().upper()


class CodeIssuer:
    """Issues and redeems verification codes."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._policy = resolver.code_policy()

    def generate(self) -> str:
        return "".join(
            secrets.choice(self._policy.alphabet) for _ in range(self._policy.length)
        )

    def issue(
        self,
        view: LedgerView,
        aggregate: LotAggregate,
        offer: Offer,
        now: datetime,
    ) -> VerificationCode:
        """Bind a fresh code to the aggregate's acceptance of ``offer``.

        Raises AlreadyIssued if the acceptance already carries a code.
        """
        acceptance = aggregate.acceptance
        if acceptance is None or acceptance.offer_id != offer.offer_id:
            raise InvalidState(
                f"Offer {offer.offer_id} has no acceptance to bind a code to",
                {"lot_id": aggregate.lot_id, "offer_id": offer.offer_id},
            )
        if acceptance.verification_code is not None:
            raise AlreadyIssued(
                f"A verification code was already issued for offer {offer.offer_id}",
                {"lot_id": aggregate.lot_id, "offer_id": offer.offer_id},
            )

        for _ in range(_MAX_DRAWS):
            candidate = self.generate()
            if not view.exists(code_key(candidate)):
                break
        else:
            raise TransientStoreError("Could not draw an unused verification code")

        record = VerificationCode(
            code=candidate,
            lot_id=aggregate.lot_id,
            offer_id=offer.offer_id,
            issued_utc=now,
            expires_utc=now + timedelta(days=self._policy.validity_days),
        )
        view.put(code_key(candidate), record)
        acceptance.verification_code = candidate
        return record

    def redeem(
        self,
        view: LedgerView,
        actor_id: str,
        raw_code: str,
        now: datetime,
    ) -> dict[str, Any]:
        """Consume a code once; later redemptions return the same record."""
        code = normalize_code(raw_code)
        record = view.get(code_key(code))
        if record is None:
            raise NotFound("Verification code not recognised")

        if record.consumed:
            logger.info("code.redeem_repeat", lot_id=record.lot_id)
            return outcome(record.to_dict())

        if record.lapsed_at(now):
            raise AlreadyExpired(
                f"Verification code for lot {record.lot_id} expired",
                {"lot_id": record.lot_id, "expires_utc": record.expires_utc.isoformat()},
            )

        record.consumed = True
        record.consumed_utc = now
        record.consumed_by = actor_id
        view.put(code_key(code), record)
        return outcome(
            record.to_dict(),
            transition(
                EventKind.CODE_REDEEMED, record.lot_id, [actor_id],
                offer_id=record.offer_id,
            ),
        )
