"""Tests for policy resolution, identifier minting and logging setup."""

import json
import re
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
import structlog

from tradeflow import log_config
from tradeflow.errors import TransientStoreError
from tradeflow.identifiers import IdentifierFactory
from tradeflow.policy.resolver import POLICY_FILENAME, PolicyResolver

from conftest import CONFIG_DIR

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _write_policy(tmp_path: Path, **changes: object) -> Path:
    policy = json.loads((CONFIG_DIR / POLICY_FILENAME).read_text(encoding="utf-8"))
    for dotted, value in changes.items():
        section, _, name = dotted.partition("__")
        if name:
            policy[section][name] = value
        elif value is None:
            del policy[section]
        else:
            policy[section] = value
    (tmp_path / POLICY_FILENAME).write_text(json.dumps(policy), encoding="utf-8")
    return tmp_path


class TestPolicyResolver:
    def test_loads_shipped_policy(self, resolver: PolicyResolver) -> None:
        assert resolver.version == "1.0.0"
        assert resolver.default_validity_days() == 7
        assert resolver.validity_bounds() == (1, 90)
        assert resolver.storage_daily_rate() == Decimal("0.50")
        assert resolver.fee_currency() == "USD"

    def test_retry_policy(self, resolver: PolicyResolver) -> None:
        retry = resolver.retry_policy()
        assert retry.max_cas_attempts == 8
        assert retry.transient_attempts == 3
        assert retry.base_delay_seconds <= retry.max_delay_seconds

    def test_code_policy(self, resolver: PolicyResolver) -> None:
        codes = resolver.code_policy()
        assert codes.length == 8
        assert "O" not in codes.alphabet and "0" not in codes.alphabet

    @pytest.mark.parametrize("operation", [
        "accept_offer", "request_payment", "confirm_payment",
        "validate_payment", "redeem_code",
    ])
    def test_idempotency_required(self, resolver: PolicyResolver, operation: str) -> None:
        assert resolver.idempotency_required(operation)

    def test_idempotency_optional_elsewhere(self, resolver: PolicyResolver) -> None:
        assert not resolver.idempotency_required("create_offer")

    def test_missing_file_fails_loud(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            PolicyResolver.from_config_dir(tmp_path)

    def test_missing_version_fails_loud(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="missing version"):
            PolicyResolver.from_config_dir(_write_policy(tmp_path, version=None))

    def test_inverted_validity_bounds_rejected(self, tmp_path: Path) -> None:
        config_dir = _write_policy(tmp_path, offers__min_validity_days=100)
        with pytest.raises(ValueError, match="min_validity_days"):
            PolicyResolver.from_config_dir(config_dir)

    def test_short_codes_rejected(self, tmp_path: Path) -> None:
        config_dir = _write_policy(tmp_path, verification_codes__length=4)
        with pytest.raises(ValueError, match="guessable"):
            PolicyResolver.from_config_dir(config_dir)

    def test_unknown_identifier_entity(self, resolver: PolicyResolver) -> None:
        with pytest.raises(ValueError, match="Unknown identifier entity"):
            resolver.id_prefix("invoice")
        with pytest.raises(ValueError):
            resolver.id_prefix("suffix_length")


class TestIdentifierFactory:
    def test_dated_format(self, resolver: PolicyResolver) -> None:
        lot_id = IdentifierFactory(resolver).new_id("lot", NOW)
        assert re.fullmatch(r"CUSTODY-20260302-[A-Z0-9]{4}", lot_id)

    def test_unique_id_skips_taken(self, resolver: PolicyResolver) -> None:
        factory = IdentifierFactory(resolver)
        seen: list[str] = []

        def in_use(candidate: str) -> bool:
            seen.append(candidate)
            return len(seen) < 3

        minted = factory.new_unique_id("offer", NOW, in_use)
        assert minted == seen[-1]
        assert len(seen) == 3

    def test_unique_id_gives_up(self, resolver: PolicyResolver) -> None:
        with pytest.raises(TransientStoreError):
            IdentifierFactory(resolver).new_unique_id("offer", NOW, lambda _: True)


class TestLogConfig:
    def test_configure_once_from_policy(self, resolver: PolicyResolver) -> None:
        structlog.reset_defaults()
        try:
            level, json_logs = resolver.logging_config()
            log_config.configure_logging(level, json_logs)
            assert structlog.is_configured()
            processors = structlog.get_config()["processors"]

            log_config.configure_logging("DEBUG", not json_logs)

            assert structlog.get_config()["processors"] is processors
            structlog.get_logger("tradeflow.test").info("logging.ready", lot_id="L1")
        finally:
            structlog.reset_defaults()
