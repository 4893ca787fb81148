"""Curtailment to Bitcoin mining potential reconciliation."""

__version__ = "0.1.0"
