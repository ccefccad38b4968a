"""Dated identifier minting: PREFIX-YYYYMMDD-XXXX.

Suffixes come from the secrets module. Callers that store a new
identifier check it against the ledger view first; the check is part of
the same transaction, so two writers can never both claim one id.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime
from typing import Callable

from tradeflow.errors import TransientStoreError
from tradeflow.policy.resolver import PolicyResolver

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
_MAX_MINT_ATTEMPTS = 16


class IdentifierFactory:
    """Mints identifiers according to the configured prefixes."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def new_id(self, entity: str, now: datetime) -> str:
        prefix = self._resolver.id_prefix(entity)
        length = self._resolver.id_suffix_length()
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))
        return f"{prefix}-{now:%Y%m%d}-{suffix}"

    def new_unique_id(
        self,
        entity: str,
        now: datetime,
        in_use: Callable[[str], bool],
    ) -> str:
        """Mint an id for which ``in_use`` returns False."""
        for _ in range(_MAX_MINT_ATTEMPTS):
            candidate = self.new_id(entity, now)
            if not in_use(candidate):
                return candidate
        raise TransientStoreError(
            f"Could not mint a free {entity} identifier for {now:%Y-%m-%d}"
        )
