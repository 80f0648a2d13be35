"""Independent verification of published payout statements.

Recomputes the allocation-set hash and the full apportionment from the
published allocations, then checks the statement against both. Works on
data fetched from the public API, so an auditor needs no database access.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .hashing import allocation_set_hash
from .models import Allocation, PayoutStatement, StatementSignature
from .payouts import compute_payouts
from .signer import SigningContext, verify_statement_signature


@dataclass
class VerificationResult:
    """Outcome of statement verification."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


class StatementVerifier:
    """Verifies a payout statement against the allocations it claims to use."""

    def __init__(
        self,
        signer_hotkey: str | None = None,
        context: SigningContext | None = None,
    ):
        self.signer_hotkey = signer_hotkey
        self.context = context or SigningContext()

    def verify(
        self,
        allocations: Iterable[Allocation | tuple[str, int]],
        statement: PayoutStatement,
        signatures: Iterable[StatementSignature] = (),
    ) -> VerificationResult:
        errors: list[str] = []
        allocations = list(allocations)

        # Allocation commitment
        expected_hash = allocation_set_hash(allocations)
        if expected_hash != statement.allocation_set_hash:
            errors.append(
                f"allocation_set_hash mismatch: expected {expected_hash[:16]}..., "
                f"got {statement.allocation_set_hash[:16]}..."
            )

        # Conservation: the whole pool, or nothing when no units were earned
        total_units = sum(
            a.proposed_units if isinstance(a, Allocation) else int(a[1]) for a in allocations
        )
        owed = statement.pool_total_credits if total_units > 0 else 0
        distributed = statement.distributed_credits
        if distributed != owed:
            errors.append(
                f"conservation violated: distributed {distributed}, owed {owed} "
                f"of pool {statement.pool_total_credits}"
            )

        # Apportionment
        try:
            recomputed = compute_payouts(allocations, statement.pool_total_credits)
        except ValueError as e:
            errors.append(f"recomputation failed: {e}")
        else:
            published = {line.user_id: line for line in statement.payouts}
            expected = {line.user_id: line for line in recomputed.lines}
            for user_id in sorted(set(published) | set(expected)):
                got, want = published.get(user_id), expected.get(user_id)
                if got is None:
                    errors.append(f"missing payout line for {user_id}")
                elif want is None:
                    errors.append(f"unexpected payout line for {user_id}")
                elif got != want:
                    errors.append(
                        f"payout mismatch for {user_id}: expected "
                        f"{want.amount_credits} credits / {want.total_units} units, "
                        f"got {got.amount_credits} / {got.total_units}"
                    )

        # Signature
        if self.signer_hotkey is not None:
            signed = any(
                sig.signer_hotkey == self.signer_hotkey
                and verify_statement_signature(statement, sig, self.context)
                for sig in signatures
            )
            if not signed:
                errors.append(f"no valid signature from {self.signer_hotkey}")

        return VerificationResult(valid=len(errors) == 0, errors=errors)


__all__ = ["StatementVerifier", "VerificationResult"]
