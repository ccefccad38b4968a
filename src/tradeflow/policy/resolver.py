"""Policy resolver — loads settlement_policy.json and exposes every
runtime constant as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any


POLICY_FILENAME = "settlement_policy.json"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings for ledger access."""
    max_cas_attempts: int
    transient_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float


@dataclass(frozen=True)
class CodePolicy:
    length: int
    alphabet: str
    validity_days: int


class PolicyResolver:
    """Loads and resolves all settlement policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        retry = resolver.retry_policy()
        days = resolver.default_validity_days()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / POLICY_FILENAME))

    def _validate(self) -> None:
        if "version" not in self._policy:
            raise ValueError(f"{POLICY_FILENAME} missing version")
        offers = self._policy["offers"]
        if offers["min_validity_days"] > offers["max_validity_days"]:
            raise ValueError("min_validity_days exceeds max_validity_days")
        codes = self._policy["verification_codes"]
        if codes["length"] < 6:
            raise ValueError("Verification codes shorter than 6 characters are guessable")
        if len(set(codes["alphabet"])) < 16:
            raise ValueError("Verification code alphabet needs at least 16 symbols")

    @property
    def version(self) -> str:
        return self._policy["version"]

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def default_validity_days(self) -> int:
        return self._policy["offers"]["default_validity_days"]

    def validity_bounds(self) -> tuple[int, int]:
        """Return (min_days, max_days) for an offer's validity window."""
        offers = self._policy["offers"]
        return offers["min_validity_days"], offers["max_validity_days"]

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    def code_policy(self) -> CodePolicy:
        codes = self._policy["verification_codes"]
        return CodePolicy(
            length=codes["length"],
            alphabet=codes["alphabet"],
            validity_days=codes["validity_days"],
        )

    # ------------------------------------------------------------------
    # Ledger access
    # ------------------------------------------------------------------

    def retry_policy(self) -> RetryPolicy:
        ledger = self._policy["ledger"]
        transient = ledger["transient_retry"]
        return RetryPolicy(
            max_cas_attempts=ledger["max_cas_attempts"],
            transient_attempts=transient["max_attempts"],
            base_delay_seconds=transient["base_delay_seconds"],
            max_delay_seconds=transient["max_delay_seconds"],
        )

    def idempotency_required(self, operation: str) -> bool:
        """Whether calls to ``operation`` must carry an idempotency key."""
        return operation in self._policy["idempotency"]["required_operations"]

    # ------------------------------------------------------------------
    # Storage fees
    # ------------------------------------------------------------------

    def storage_daily_rate(self) -> Decimal:
        """Return the storage fee per unit of weight per day."""
        return Decimal(self._policy["storage_fees"]["daily_rate_per_unit"])

    def fee_currency(self) -> str:
        return self._policy["storage_fees"]["currency"]

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def id_prefix(self, entity: str) -> str:
        """Return the identifier prefix for an entity kind."""
        prefixes = self._policy["identifiers"]
        if entity not in prefixes or entity == "suffix_length":
            raise ValueError(f"Unknown identifier entity: {entity}")
        return prefixes[entity]

    def id_suffix_length(self) -> int:
        return self._policy["identifiers"]["suffix_length"]

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def logging_config(self) -> tuple[str, bool]:
        """Return (level, json_logs)."""
        cfg = self._policy["logging"]
        return cfg["level"], cfg["json"]


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
