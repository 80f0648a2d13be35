"""Epoch-based activity ledger.

Turns curated contribution events into a deterministic, independently
verifiable split of a fixed integer credit pool:

- Allocations: per-user weighted unit totals from included curations
- Pool: additive funding components summed into the epoch budget
- Statement: largest-remainder apportionment, frozen at close
"""

from .allocation import compute_allocations
from .hashing import allocation_set_hash, canonical_json, compute_hash, payouts_hash
from .models import (
    ActivityEvent,
    Allocation,
    CuratedEvent,
    Curation,
    Epoch,
    EpochStatus,
    IdentityBinding,
    PayoutLine,
    PayoutStatement,
    PoolComponent,
    SourceCursor,
    StatementSignature,
    UncuratedEvent,
    WeightConfig,
)
from .payouts import PayoutResult, compute_payouts, format_share
from .signer import SigningContext, sign_statement, verify_statement_signature
from .verifier import StatementVerifier, VerificationResult

__all__ = [
    "ActivityEvent",
    "Allocation",
    "CuratedEvent",
    "Curation",
    "Epoch",
    "EpochStatus",
    "IdentityBinding",
    "PayoutLine",
    "PayoutResult",
    "PayoutStatement",
    "PoolComponent",
    "SigningContext",
    "SourceCursor",
    "StatementSignature",
    "StatementVerifier",
    "UncuratedEvent",
    "VerificationResult",
    "WeightConfig",
    "allocation_set_hash",
    "canonical_json",
    "compute_allocations",
    "compute_hash",
    "compute_payouts",
    "format_share",
    "payouts_hash",
    "sign_statement",
    "verify_statement_signature",
]
