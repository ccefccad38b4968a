"""Per-request context passed explicitly into every service call."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, and how to recognise a retry of the same call.

    ``now`` overrides the service clock for this call only (batch sweeps,
    replayed imports, tests).
    """
    actor_id: str
    idempotency_key: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    now: Optional[datetime] = None
