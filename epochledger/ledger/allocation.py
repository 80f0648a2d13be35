"""Allocation calculator: curated events -> per-user weighted units.

Pure function over a curation snapshot and the epoch's pinned weight table.
No I/O; the caller persists the result with an idempotent upsert.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from .models import Allocation, CuratedEvent, Epoch


def compute_allocations(
    epoch: Epoch,
    curated: Iterable[CuratedEvent],
) -> list[Allocation]:
    """Group included, user-resolved curations by user and sum weights.

    Curations that are excluded, or whose platform identity has not been
    resolved to a user yet, do not contribute. An included event whose type
    is missing from the weight table raises UnknownEventTypeError, resolved
    or not: the run halts rather than under-counting.

    Returns allocations sorted by user_id so identical snapshots always
    produce identical rows.
    """
    units: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)

    for row in curated:
        if row.epoch_id != epoch.id:
            raise ValueError(
                f"curation for epoch {row.epoch_id} passed to epoch {epoch.id}"
            )
        if not row.included:
            continue
        weight = epoch.weight_config.weight_for(row.event_type, epoch.id)
        if row.user_id is None:
            continue
        units[row.user_id] += weight
        counts[row.user_id] += 1

    return [
        Allocation(
            node_id=epoch.node_id,
            epoch_id=epoch.id,
            user_id=user_id,
            proposed_units=units[user_id],
            activity_count=counts[user_id],
        )
        for user_id in sorted(units)
    ]


__all__ = ["compute_allocations"]
