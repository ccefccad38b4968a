"""Error taxonomy for the settlement workflow.

Every business-rule violation is raised as a SettlementError subclass
carrying a machine-readable ErrorKind. The service layer converts these
into typed ServiceResult failures; nothing here is ever swallowed.

Race and idempotency outcomes (AlreadyTaken, AlreadyRequested,
AlreadyIssued, DuplicateRequest, AlreadyPending) are expected results of
concurrent use and carry their own kinds so callers can tell them apart
from a plain InvalidState.

Only TransientStoreError is retryable. The core retries it a bounded
number of times; after that it reaches the caller, who retries with the
same idempotency key.
"""

from __future__ import annotations

import enum
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    """Machine-readable failure classification."""
    VALIDATION = "validation_error"
    NOT_AUTHORIZED = "not_authorized"
    SAME_PARTY = "same_party"
    INVALID_STATE = "invalid_state"
    INVALID_LOT_STATE = "invalid_lot_state"
    NOT_REQUESTED = "not_requested"
    NOT_CONFIRMED = "not_confirmed"
    ALREADY_TAKEN = "already_taken"
    ALREADY_PENDING = "already_pending"
    ALREADY_REQUESTED = "already_requested"
    ALREADY_ISSUED = "already_issued"
    ALREADY_EXPIRED = "already_expired"
    DUPLICATE_REQUEST = "duplicate_request"
    NOT_FOUND = "not_found"
    TRANSIENT_STORE_ERROR = "transient_store_error"


class SettlementError(Exception):
    """Base class for typed workflow failures."""

    kind: ErrorKind = ErrorKind.INVALID_STATE
    retryable: bool = False
    replayed: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class ValidationError(SettlementError):
    """Malformed or incomplete input. Caller-fixable, never auto-retried."""
    kind = ErrorKind.VALIDATION


class NotAuthorized(SettlementError):
    """Actor does not hold the role the operation requires."""
    kind = ErrorKind.NOT_AUTHORIZED


class SameParty(NotAuthorized):
    """Separation of duties: the requester cannot also confirm."""
    kind = ErrorKind.SAME_PARTY


class InvalidState(SettlementError):
    """Operation is not legal in the record's current status."""
    kind = ErrorKind.INVALID_STATE


class InvalidLotState(InvalidState):
    """Operation is not legal in the lot's current lifecycle phase."""
    kind = ErrorKind.INVALID_LOT_STATE


class NotRequested(InvalidState):
    """Payment confirmation or validation attempted before a request."""
    kind = ErrorKind.NOT_REQUESTED


class NotConfirmed(InvalidState):
    """Payment validation attempted before counter-party confirmation."""
    kind = ErrorKind.NOT_CONFIRMED


class AlreadyTaken(SettlementError):
    """The offer is no longer available: another claim won, or it closed."""
    kind = ErrorKind.ALREADY_TAKEN


class AlreadyPending(SettlementError):
    """An active counter-offer already exists for the offer."""
    kind = ErrorKind.ALREADY_PENDING


class AlreadyRequested(SettlementError):
    """A payment workflow already exists for the lot."""
    kind = ErrorKind.ALREADY_REQUESTED


class AlreadyIssued(SettlementError):
    """A verification code was already issued for this acceptance."""
    kind = ErrorKind.ALREADY_ISSUED


class AlreadyExpired(SettlementError):
    """The verification code's validity window has elapsed."""
    kind = ErrorKind.ALREADY_EXPIRED


class DuplicateRequest(SettlementError):
    """A non-cancelled dispatch request already exists for the lot."""
    kind = ErrorKind.DUPLICATE_REQUEST


class NotFound(SettlementError):
    """Referenced lot, offer, counter-offer, request or code does not exist."""
    kind = ErrorKind.NOT_FOUND


class TransientStoreError(SettlementError):
    """The ledger could not complete the operation right now. Retry-safe."""
    kind = ErrorKind.TRANSIENT_STORE_ERROR
    retryable = True


_ERRORS_BY_KIND: dict[ErrorKind, type[SettlementError]] = {
    cls.kind: cls
    for cls in (
        ValidationError, NotAuthorized, SameParty, InvalidState,
        InvalidLotState, NotRequested, NotConfirmed, AlreadyTaken,
        AlreadyPending, AlreadyRequested, AlreadyIssued, AlreadyExpired,
        DuplicateRequest, NotFound, TransientStoreError,
    )
}


def error_for_kind(
    kind: ErrorKind | str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> SettlementError:
    """Rebuild a typed error from its recorded kind (idempotent replay)."""
    cls = _ERRORS_BY_KIND.get(ErrorKind(kind), SettlementError)
    return cls(message, details)
