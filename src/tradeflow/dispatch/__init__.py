"""Dispatch module — pickup scheduling."""

from tradeflow.dispatch.scheduler import DispatchScheduler

__all__ = ["DispatchScheduler"]
