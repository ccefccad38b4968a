"""Offers module — offer registry and acceptance arbitration."""

from tradeflow.offers.arbiter import AcceptanceArbiter
from tradeflow.offers.registry import OfferRegistry

__all__ = ["AcceptanceArbiter", "OfferRegistry"]
