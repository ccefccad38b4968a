"""Custody module — lot registration, storage fees, authorization, archival."""

from tradeflow.custody.engine import CustodyEngine

__all__ = ["CustodyEngine"]
