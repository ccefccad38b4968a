"""Transition notifications — the emission point after each commit.

Engines describe what changed as plain transition dicts (so they can be
stored inside idempotency records). The service turns them into
TransitionEvents once the ledger commit has succeeded and hands them to
the NotificationHub.

Delivery is fire-and-forget: a failing subscriber is logged and skipped,
never re-raised, and never undoes the transition.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import structlog

from tradeflow.persistence.event_log import EventKind

logger = structlog.get_logger(__name__)


def transition(
    kind: EventKind,
    lot_id: str,
    actors: Iterable[Optional[str]],
    **payload: Any,
) -> dict[str, Any]:
    """Describe one committed transition."""
    unique: list[str] = []
    for actor in actors:
        if actor and actor not in unique:
            unique.append(actor)
    return {
        "event_type": kind.value,
        "lot_id": lot_id,
        "actors": unique,
        "payload": payload,
    }


def outcome(result: dict[str, Any], *transitions: dict[str, Any]) -> dict[str, Any]:
    """Bundle an operation's result with the transitions it committed."""
    return {"result": result, "transitions": list(transitions)}


@dataclass(frozen=True)
class TransitionEvent:
    """Notification payload: {lot_id, event_type, actors[]} plus details."""
    lot_id: str
    event_type: EventKind
    actors: tuple[str, ...]
    occurred_utc: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_transition(cls, data: dict[str, Any], occurred_utc: str) -> TransitionEvent:
        return cls(
            lot_id=data["lot_id"],
            event_type=EventKind(data["event_type"]),
            actors=tuple(data["actors"]),
            occurred_utc=occurred_utc,
            payload=dict(data.get("payload", {})),
        )


Handler = Callable[[TransitionEvent], None]


class NotificationHub:
    """Fan-out of transition events to subscribers.

    Usage:
        hub = NotificationHub()
        hub.subscribe(push_gateway.send)
        hub.subscribe(sms_gateway.send, {EventKind.OFFER_CREATED})
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[Handler, Optional[frozenset[EventKind]]]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: Handler,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> None:
        """Register a handler, optionally for a subset of event kinds."""
        with self._lock:
            self._handlers.append((handler, frozenset(kinds) if kinds else None))

    def publish(self, event: TransitionEvent) -> int:
        """Deliver to every matching handler. Returns the delivery count."""
        with self._lock:
            handlers = list(self._handlers)
        delivered = 0
        for handler, kinds in handlers:
            if kinds is not None and event.event_type not in kinds:
                continue
            try:
                handler(event)
            except Exception:
                logger.warning(
                    "notification.handler_failed",
                    event_type=event.event_type.value,
                    lot_id=event.lot_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )
                continue
            delivered += 1
        return delivered
