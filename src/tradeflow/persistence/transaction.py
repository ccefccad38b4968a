"""Atomic read-modify-write over the ledger.

AtomicRunner.run() is the one way the settlement core changes stored
state:

1. A fresh LedgerView records the version of every key it reads.
2. The caller's mutate function reads, decides and stages writes on the
   view. It raises a SettlementError to refuse.
3. The staged writes are committed with one multi-key compare-and-set,
   guarded by the versions of every key that was only read.
4. On a version conflict the whole cycle repeats on fresh data, up to
   max_cas_attempts, then gives up with TransientStoreError.

Individual ledger calls that raise TransientStoreError are retried with
exponential backoff via tenacity before the cycle itself fails.

When an IdempotencyToken is supplied the outcome (payload or typed
failure) is written in the same commit under the token's key. A later
call with the same token returns that outcome without running mutate.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tradeflow.errors import (
    SettlementError,
    TransientStoreError,
    ValidationError,
    error_for_kind,
)
from tradeflow.persistence.ledger import LedgerStore, idempotency_key
from tradeflow.policy.resolver import RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IdempotencyToken:
    """Client-supplied retry key bound to one actor, operation and request."""
    operation: str
    actor_id: str
    key: str
    fingerprint: str

    @classmethod
    def for_request(
        cls,
        operation: str,
        actor_id: str,
        key: str,
        request_fields: dict[str, Any],
    ) -> IdempotencyToken:
        canonical = json.dumps(request_fields, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return cls(operation, actor_id, key, f"sha256:{digest}")

    @property
    def ledger_key(self) -> str:
        return idempotency_key(self.operation, self.actor_id, self.key)


@dataclass(frozen=True)
class Committed:
    """Outcome of a successful run."""
    payload: dict[str, Any]
    replayed: bool = False


class LedgerView:
    """A single attempt's consistent window onto the ledger."""

    def __init__(self, ledger: LedgerStore, call: Callable[..., Any]) -> None:
        self._ledger = ledger
        self._call = call
        self._reads: dict[str, tuple[Any, int]] = {}
        self._writes: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        """Return the current value for key (staged writes win)."""
        if key in self._writes:
            return self._writes[key]
        if key not in self._reads:
            self._reads[key] = self._call(self._ledger.get, key)
        return self._reads[key][0]

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def put(self, key: str, value: Any) -> None:
        self.get(key)
        self._writes[key] = value

    @property
    def has_writes(self) -> bool:
        return bool(self._writes)

    def discard_writes(self) -> None:
        self._writes.clear()

    def updates(self) -> dict[str, tuple[int, Any]]:
        return {key: (self._reads[key][1], value) for key, value in self._writes.items()}

    def guards(self) -> dict[str, int]:
        return {
            key: version
            for key, (_, version) in self._reads.items()
            if key not in self._writes
        }


class AtomicRunner:
    """Runs mutate functions as optimistic transactions against a ledger."""

    def __init__(self, ledger: LedgerStore, retry: RetryPolicy) -> None:
        self._ledger = ledger
        self._retry = retry

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    def read(self, key: str) -> Any:
        """Read one value outside any transaction."""
        return self._call(self._ledger.get, key)[0]

    def run(
        self,
        mutate: Callable[[LedgerView], dict[str, Any]],
        idempotency: Optional[IdempotencyToken] = None,
    ) -> Committed:
        """Execute ``mutate`` atomically. See module docstring."""
        for attempt in range(1, self._retry.max_cas_attempts + 1):
            view = LedgerView(self._ledger, self._call)

            if idempotency is not None:
                recorded = view.get(idempotency.ledger_key)
                if recorded is not None:
                    return self._replay(recorded, idempotency)

            try:
                payload = mutate(view)
            except TransientStoreError:
                raise
            except SettlementError as exc:
                if idempotency is None:
                    raise
                view.discard_writes()
                view.put(idempotency.ledger_key, {
                    "fingerprint": idempotency.fingerprint,
                    "ok": False,
                    "error_kind": exc.kind.value,
                    "message": exc.message,
                    "details": exc.details,
                })
                if self._commit(view):
                    raise
                logger.debug("ledger.conflict", attempt=attempt, outcome="failure")
                continue

            if idempotency is not None:
                view.put(idempotency.ledger_key, {
                    "fingerprint": idempotency.fingerprint,
                    "ok": True,
                    "payload": payload,
                })
            if not view.has_writes or self._commit(view):
                return Committed(payload=payload)
            logger.debug("ledger.conflict", attempt=attempt)

        raise TransientStoreError(
            f"Ledger contention: no commit after {self._retry.max_cas_attempts} attempts"
        )

    def _commit(self, view: LedgerView) -> bool:
        return self._call(
            self._ledger.compare_and_set_many, view.updates(), view.guards(),
        )

    def _replay(self, recorded: dict[str, Any], token: IdempotencyToken) -> Committed:
        if recorded["fingerprint"] != token.fingerprint:
            raise ValidationError(
                f"Idempotency key {token.key!r} was already used for a "
                f"different {token.operation} request"
            )
        logger.info(
            "idempotency.replay",
            operation=token.operation,
            actor_id=token.actor_id,
            ok=recorded["ok"],
        )
        if recorded["ok"]:
            return Committed(payload=recorded["payload"], replayed=True)
        error = error_for_kind(
            recorded["error_kind"], recorded["message"], recorded["details"],
        )
        error.replayed = True
        raise error

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self._retry.transient_attempts),
            wait=wait_exponential(
                multiplier=self._retry.base_delay_seconds,
                max=self._retry.max_delay_seconds,
            ),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=_log_transient,
            reraise=True,
        )
        return retrying(fn, *args)


def _log_transient(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ledger.transient_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
    )
