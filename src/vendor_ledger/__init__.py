"""Vendor wallet ledger and task assignment core."""

__version__ = "0.1.0"
