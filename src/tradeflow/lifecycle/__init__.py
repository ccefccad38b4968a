"""Lot and offer lifecycle state machines."""
