"""Verification code module — issuance and idempotent redemption."""

from tradeflow.codes.issuer import CodeIssuer

__all__ = ["CodeIssuer"]
