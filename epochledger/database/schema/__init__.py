from .base import Base
from .ledger import (
    ActivityEventRow,
    AllocationRow,
    CurationRow,
    EpochRow,
    PayoutStatementRow,
    PoolComponentRow,
    SourceCursorRow,
    StatementSignatureRow,
    UserBindingRow,
)

__all__ = [
    "ActivityEventRow",
    "AllocationRow",
    "Base",
    "CurationRow",
    "EpochRow",
    "PayoutStatementRow",
    "PoolComponentRow",
    "SourceCursorRow",
    "StatementSignatureRow",
    "UserBindingRow",
]
