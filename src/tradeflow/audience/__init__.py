"""Audience module — counter-party directory for broadcast fan-out."""

from tradeflow.audience.directory import (
    CounterpartyDirectory,
    Participant,
    ParticipantRole,
    ParticipantStatus,
)

__all__ = [
    "CounterpartyDirectory",
    "Participant",
    "ParticipantRole",
    "ParticipantStatus",
]
