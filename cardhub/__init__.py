"""CardHub subscription entitlement and usage reconciliation engine."""

__version__ = "0.1.0"
