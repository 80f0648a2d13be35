"""Epoch-based activity ledger with a public read API."""

__version__ = "0.1.0"
