"""Trade-settlement workflow for commodity custody lots."""

__version__ = "0.1.0"
