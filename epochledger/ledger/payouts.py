"""Deterministic payout computation shared by the closer and the verifier.

The epoch closer and StatementVerifier both call compute_payouts so a
published statement can be reproduced from its allocations alone. All
arithmetic is integer; no floats anywhere on the path to amount_credits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .models import Allocation, PayoutLine

SHARE_DECIMALS = 6
_SHARE_SCALE = 10**SHARE_DECIMALS


@dataclass
class PayoutResult:
    """Output of compute_payouts with the intermediate apportionment trail."""

    lines: list[PayoutLine] = field(default_factory=list)
    total_units: int = 0
    pool_total_credits: int = 0

    # Intermediate values for audit trail
    floors: dict[str, int] = field(default_factory=dict)  # user_id -> floor credits
    remainders: dict[str, int] = field(default_factory=dict)  # user_id -> units*pool % total
    bonus_recipients: list[str] = field(default_factory=list)  # residual order

    @property
    def distributed(self) -> int:
        return sum(line.amount_credits for line in self.lines)

    @property
    def undistributed(self) -> int:
        """Credits left in the pool; non-zero only when no units were earned."""
        return self.pool_total_credits - self.distributed


def format_share(units: int, total_units: int) -> str:
    """units / total_units as a decimal string, truncated to 6 places."""
    if total_units <= 0:
        return f"0.{'0' * SHARE_DECIMALS}"
    scaled = units * _SHARE_SCALE // total_units
    whole, frac = divmod(scaled, _SHARE_SCALE)
    return f"{whole}.{frac:0{SHARE_DECIMALS}d}"


def _units_by_user(allocations: Iterable[Allocation | tuple[str, int]]) -> dict[str, int]:
    units: dict[str, int] = {}
    for item in allocations:
        if isinstance(item, Allocation):
            user_id, value = item.user_id, item.proposed_units
        else:
            user_id, value = item[0], int(item[1])
        if value < 0:
            raise ValueError(f"negative units for user {user_id}: {value}")
        units[user_id] = units.get(user_id, 0) + value
    return units


def compute_payouts(
    allocations: Iterable[Allocation | tuple[str, int]],
    pool_total_credits: int,
) -> PayoutResult:
    """Split an integer pool across users with the largest-remainder method.

    Steps:
    1. Sum units per user (multiple rows for one user are merged)
    2. floor_i = units_i * pool // total, rem_i = units_i * pool % total
    3. residual = pool - sum(floor_i)
    4. Award one extra credit to each of the first `residual` users ordered
       by rem_i descending, then user_id ascending
    5. Emit lines sorted by user_id

    Whenever any units were earned the result satisfies
    sum(amount_credits) == pool_total_credits. With zero total units there
    is nothing to weight by: every line gets 0 and the whole pool is
    reported as undistributed, so a quiet epoch can still close.

    Raises:
        ValueError: negative pool or negative units.
    """
    if pool_total_credits < 0:
        raise ValueError(f"pool_total_credits must be >= 0, got {pool_total_credits}")

    units = _units_by_user(allocations)
    total_units = sum(units.values())
    result = PayoutResult(total_units=total_units, pool_total_credits=pool_total_credits)

    if total_units == 0:
        result.lines = [
            PayoutLine(user_id=u, total_units=0, share=format_share(0, 0), amount_credits=0)
            for u in sorted(units)
        ]
        return result

    users = sorted(units)
    floor_sum = 0
    for user_id in users:
        floor, rem = divmod(units[user_id] * pool_total_credits, total_units)
        result.floors[user_id] = floor
        result.remainders[user_id] = rem
        floor_sum += floor

    residual = pool_total_credits - floor_sum
    # residual < len(users) because each remainder is < total_units
    by_remainder = sorted(users, key=lambda u: (-result.remainders[u], u))
    result.bonus_recipients = by_remainder[:residual]
    bonus = set(result.bonus_recipients)

    result.lines = [
        PayoutLine(
            user_id=user_id,
            total_units=units[user_id],
            share=format_share(units[user_id], total_units),
            amount_credits=result.floors[user_id] + (1 if user_id in bonus else 0),
        )
        for user_id in users
    ]
    return result


__all__ = ["SHARE_DECIMALS", "PayoutResult", "compute_payouts", "format_share"]
