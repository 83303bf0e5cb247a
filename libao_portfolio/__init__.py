"""Libao portfolio ledger, valuation engine and price oracle."""

__version__ = "0.1.0"
