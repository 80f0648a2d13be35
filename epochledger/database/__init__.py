"""Relational storage for the epoch ledger (schema + engine)."""
