"""Canonical content hashing for published ledger artifacts.

Every hash is SHA-256 over canonical JSON (sorted keys, no whitespace),
so anyone holding the same inputs can recompute it byte-for-byte.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from .models import Allocation, PayoutLine


def canonical_json(data: Any) -> str:
    """Serialize to the canonical form every ledger hash is computed over."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def compute_hash(data: Any) -> str:
    """SHA-256 hex digest of canonical JSON."""
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


def allocation_set_hash(allocations: Iterable[Allocation | tuple[str, int]]) -> str:
    """Commit to the exact (user_id, proposed_units) set used for a payout.

    Order-independent: entries are sorted by user id before hashing. Units
    are hashed as decimal strings so the digest never depends on a float or
    integer-width representation.
    """
    pairs: list[tuple[str, int]] = []
    for item in allocations:
        if isinstance(item, Allocation):
            pairs.append((item.user_id, item.proposed_units))
        else:
            user_id, units = item
            pairs.append((user_id, int(units)))
    pairs.sort(key=lambda p: p[0])
    return compute_hash({"allocations": [[user_id, str(units)] for user_id, units in pairs]})


def payouts_hash(payouts: Iterable[PayoutLine]) -> str:
    """Hash of the payout lines as published (string amounts)."""
    return compute_hash({"payouts": [p.model_dump(mode="json") for p in payouts]})


__all__ = [
    "allocation_set_hash",
    "canonical_json",
    "compute_hash",
    "payouts_hash",
]
