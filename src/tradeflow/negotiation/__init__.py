"""Negotiation module — single-round counter-offers."""

from tradeflow.negotiation.engine import NegotiationEngine

__all__ = ["NegotiationEngine"]
