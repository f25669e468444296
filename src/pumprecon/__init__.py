"""Fuel-pump meter reconciliation and anomaly detection."""

__version__ = "0.1.0"
