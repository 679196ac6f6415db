"""Encrypted memory persistence on the Golem Base ledger."""

__version__ = "0.1.0"
