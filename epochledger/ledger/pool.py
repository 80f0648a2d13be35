"""Pool composer: funding components that add up to an epoch's budget.

Components are independent and order-free; the budget is their sum. Which
components make an epoch "fully funded" is caller policy; this module only
reports what is missing.
"""

from __future__ import annotations

from typing import Any, Iterable

from .models import Epoch, PoolComponent

BASE_ISSUANCE = "base_issuance"
BASE_ISSUANCE_ALGORITHM = "base_issuance_v0"


def pool_total(components: Iterable[PoolComponent]) -> int:
    """Sum of amount_credits across components."""
    return sum(c.amount_credits for c in components)


def missing_components(
    components: Iterable[PoolComponent],
    required: Iterable[str] = (BASE_ISSUANCE,),
) -> list[str]:
    """Required component ids not yet present, sorted."""
    present = {c.component_id for c in components}
    return sorted(set(required) - present)


def make_component(
    epoch: Epoch,
    component_id: str,
    amount_credits: int,
    algorithm_version: str,
    inputs: dict[str, Any] | None = None,
    evidence_ref: str | None = None,
) -> PoolComponent:
    return PoolComponent(
        node_id=epoch.node_id,
        epoch_id=epoch.id,
        component_id=component_id,
        algorithm_version=algorithm_version,
        inputs_json=inputs or {},
        amount_credits=amount_credits,
        evidence_ref=evidence_ref,
    )


def base_issuance_component(epoch: Epoch, credits_per_epoch: int) -> PoolComponent:
    """Flat per-epoch issuance, the usual first funding source."""
    return make_component(
        epoch,
        BASE_ISSUANCE,
        credits_per_epoch,
        BASE_ISSUANCE_ALGORITHM,
        inputs={"credits_per_epoch": str(credits_per_epoch)},
    )


__all__ = [
    "BASE_ISSUANCE",
    "BASE_ISSUANCE_ALGORITHM",
    "base_issuance_component",
    "make_component",
    "missing_components",
    "pool_total",
]
