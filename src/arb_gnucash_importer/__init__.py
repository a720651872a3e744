"""Arbitrum account history to GnuCash importer."""

__version__ = "0.1.0"
