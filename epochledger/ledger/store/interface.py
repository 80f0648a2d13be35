"""LedgerStore protocol - persistence port for the epoch ledger.

Implementations: SqlLedgerStore (SQLAlchemy async engine; SQLite for
development and tests, PostgreSQL in production).

Every read and write is scoped by node_id. A store obtained from
`transaction()` runs all of its calls inside one database transaction
that commits when the block exits cleanly and rolls back otherwise.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Iterable, Protocol, runtime_checkable

from epochledger.ledger.models import (
    ActivityEvent,
    Allocation,
    CuratedEvent,
    Curation,
    Epoch,
    IdentityBinding,
    PayoutStatement,
    PoolComponent,
    SourceCursor,
    StatementSignature,
    UncuratedEvent,
    WeightConfig,
)


@runtime_checkable
class LedgerStore(Protocol):
    """Abstract interface for reading/writing ledger state."""

    def transaction(self) -> AsyncContextManager[LedgerStore]:
        """Unit of work: a store whose calls share one transaction."""
        ...

    # -- epochs --------------------------------------------------------------

    async def create_epoch(
        self,
        node_id: str,
        scope_id: str,
        period_start: datetime,
        period_end: datetime,
        weight_config: WeightConfig,
    ) -> Epoch:
        """Open a new epoch. Raises DuplicateRecordError on a window or open-epoch clash."""
        ...

    async def get_epoch(self, node_id: str, epoch_id: int) -> Epoch | None:
        ...

    async def get_open_epoch(self, node_id: str, scope_id: str) -> Epoch | None:
        ...

    async def get_epoch_by_window(
        self, node_id: str, scope_id: str, period_start: datetime, period_end: datetime,
    ) -> Epoch | None:
        """Status-agnostic lookup by exact window."""
        ...

    async def list_closed_epochs(
        self, node_id: str, limit: int, offset: int,
    ) -> list[Epoch]:
        """Closed epochs, newest period first."""
        ...

    async def count_closed_epochs(self, node_id: str) -> int:
        ...

    async def close_epoch(
        self, node_id: str, epoch_id: int, pool_total_credits: int,
    ) -> Epoch:
        """Transition open -> closed, verifying the pool total against components.

        Raises EpochNotFoundError, EpochNotOpenError or PoolTotalMismatchError.
        """
        ...

    # -- activity ------------------------------------------------------------

    async def insert_activity_events(self, events: Iterable[ActivityEvent]) -> int:
        """Atomic batch insert. Raises DuplicateRecordError if any id exists."""
        ...

    async def get_activity_for_window(
        self, node_id: str, scope_id: str, period_start: datetime, period_end: datetime,
    ) -> list[ActivityEvent]:
        ...

    # -- curation ------------------------------------------------------------

    async def insert_curation_do_nothing(self, rows: Iterable[Curation]) -> int:
        """Seed curation rows; existing (epoch_id, event_id) rows are left untouched.

        Returns the number of rows actually inserted.
        """
        ...

    async def update_curation(
        self,
        node_id: str,
        epoch_id: int,
        event_id: str,
        *,
        included: bool | None = None,
        user_id: str | None = None,
        note: str | None = None,
    ) -> Curation:
        ...

    async def update_curation_user_id(
        self, node_id: str, epoch_id: int, event_id: str, user_id: str,
    ) -> bool:
        """Back-fill an unresolved curation. Returns False if already resolved."""
        ...

    async def get_curation_for_epoch(self, node_id: str, epoch_id: int) -> list[Curation]:
        ...

    async def get_curated_events(self, node_id: str, epoch_id: int) -> list[CuratedEvent]:
        ...

    async def get_uncurated_events(self, node_id: str, epoch_id: int) -> list[UncuratedEvent]:
        ...

    # -- identity ------------------------------------------------------------

    async def insert_user_bindings(self, bindings: Iterable[IdentityBinding]) -> int:
        ...

    async def resolve_identities(
        self, provider: str, external_ids: Iterable[str],
    ) -> dict[str, str]:
        ...

    # -- allocations ---------------------------------------------------------

    async def insert_allocations(self, rows: Iterable[Allocation]) -> int:
        """Idempotent upsert by (epoch_id, user_id)."""
        ...

    async def delete_stale_allocations(
        self, node_id: str, epoch_id: int, keep_user_ids: Iterable[str],
    ) -> int:
        ...

    async def get_allocations_for_epoch(self, node_id: str, epoch_id: int) -> list[Allocation]:
        ...

    # -- pool ----------------------------------------------------------------

    async def insert_pool_component(self, component: PoolComponent) -> PoolComponent:
        ...

    async def get_pool_components_for_epoch(
        self, node_id: str, epoch_id: int,
    ) -> list[PoolComponent]:
        ...

    # -- statements ----------------------------------------------------------

    async def insert_payout_statement(self, statement: PayoutStatement) -> PayoutStatement:
        ...

    async def get_statement_for_epoch(
        self, node_id: str, epoch_id: int,
    ) -> PayoutStatement | None:
        ...

    async def insert_statement_signature(
        self, signature: StatementSignature,
    ) -> StatementSignature:
        ...

    async def get_signatures_for_statement(
        self, node_id: str, statement_id: str,
    ) -> list[StatementSignature]:
        ...

    # -- cursors -------------------------------------------------------------

    async def upsert_cursor(self, cursor: SourceCursor) -> None:
        ...

    async def get_cursor(
        self, node_id: str, scope_id: str, source: str, stream: str, source_ref: str,
    ) -> SourceCursor | None:
        ...


__all__ = ["LedgerStore"]
