"""Liquidation and dispute keeper for collateralized ledger positions."""

__version__ = "0.1.0"
