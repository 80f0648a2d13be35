"""Epoch ledger pipeline: ingest -> curate -> allocate -> fund -> close.

EpochLedger drives one (node, scope) pair through the lifecycle of its
epochs against a LedgerStore. Each step is a thin orchestration over the
pure functions in allocation / payouts / pool; all persistence goes
through the store so the same pipeline runs on SQLite and PostgreSQL.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

import bittensor as bt

from .allocation import compute_allocations
from .errors import (
    ConflictError,
    DuplicateRecordError,
    EpochClosedError,
    EpochNotFoundError,
    EpochNotOpenError,
    LedgerValidationError,
    PoolTotalMismatchError,
)
from .hashing import allocation_set_hash
from .models import (
    ActivityEvent,
    Allocation,
    Curation,
    Epoch,
    PayoutStatement,
    PoolComponent,
    SourceCursor,
    StatementSignature,
    WeightConfig,
)
from .payouts import compute_payouts
from .pool import make_component, pool_total
from .signer import SigningContext, sign_statement
from .store.interface import LedgerStore


@dataclass
class CurationResult:
    """Counts from one curate_and_resolve pass."""

    seeded: int = 0
    backfilled: int = 0
    unresolved: int = 0


class EpochLedger:
    """Runs epochs for a single (node_id, scope_id) tenant."""

    def __init__(
        self,
        store: LedgerStore,
        node_id: str,
        scope_id: str,
        identity_provider: str = "github",
    ):
        self.store = store
        self.node_id = node_id
        self.scope_id = scope_id
        self.identity_provider = identity_provider

    async def _require_epoch(self, epoch_id: int, store: LedgerStore | None = None) -> Epoch:
        epoch = await (store or self.store).get_epoch(self.node_id, epoch_id)
        if epoch is None or epoch.scope_id != self.scope_id:
            raise EpochNotFoundError(epoch_id)
        return epoch

    async def _require_open(
        self, epoch_id: int, operation: str, store: LedgerStore | None = None,
    ) -> Epoch:
        epoch = await self._require_epoch(epoch_id, store)
        if not epoch.is_open:
            raise EpochClosedError(epoch_id, operation)
        return epoch

    # -- epochs --------------------------------------------------------------

    async def ensure_epoch_for_window(
        self,
        period_start: datetime,
        period_end: datetime,
        weight_config: WeightConfig | dict[str, int],
    ) -> Epoch:
        """Return the epoch for this window, creating it if needed.

        An existing epoch keeps the weight table it was created with; a
        differing table is logged as drift and ignored.
        """
        weights = WeightConfig.parse(weight_config)
        existing = await self.store.get_epoch_by_window(
            self.node_id, self.scope_id, period_start, period_end,
        )
        if existing is None:
            try:
                epoch = await self.store.create_epoch(
                    self.node_id, self.scope_id, period_start, period_end, weights,
                )
            except DuplicateRecordError:
                # Lost a create race, or another epoch is still open
                existing = await self.store.get_epoch_by_window(
                    self.node_id, self.scope_id, period_start, period_end,
                )
                if existing is None:
                    raise
            else:
                bt.logging.info({
                    "ledger_epoch_opened": {
                        "node_id": self.node_id,
                        "scope_id": self.scope_id,
                        "epoch_id": epoch.id,
                        "period_start": epoch.period_start.isoformat(),
                        "period_end": epoch.period_end.isoformat(),
                        "weights": weights.as_dict(),
                    }
                })
                return epoch

        if existing.weight_config != weights:
            bt.logging.warning({
                "ledger_weight_drift": {
                    "epoch_id": existing.id,
                    "pinned": existing.weight_config.as_dict(),
                    "configured": weights.as_dict(),
                }
            })
        return existing

    # -- intake --------------------------------------------------------------

    async def ingest_events(self, events: Iterable[ActivityEvent]) -> int:
        """Persist a deduplicated batch; all or nothing."""
        events = list(events)
        for event in events:
            if event.node_id != self.node_id or event.scope_id != self.scope_id:
                raise LedgerValidationError(
                    f"event {event.id} belongs to {event.node_id}/{event.scope_id}, "
                    f"not {self.node_id}/{self.scope_id}"
                )
        inserted = await self.store.insert_activity_events(events)
        bt.logging.info({
            "ledger_ingest": {"node_id": self.node_id, "events": inserted}
        })
        return inserted

    async def save_cursor(
        self,
        source: str,
        stream: str,
        source_ref: str,
        cursor_value: str,
        retrieved_at: datetime | None = None,
    ) -> SourceCursor:
        """Advance a source cursor. A value behind the stored one is ignored."""
        current = await self.load_cursor(source, stream, source_ref)
        if current is not None and cursor_value < current.cursor_value:
            bt.logging.warning({
                "ledger_cursor_regression": {
                    "source": source,
                    "stream": stream,
                    "source_ref": source_ref,
                    "stored": current.cursor_value,
                    "rejected": cursor_value,
                }
            })
            return current
        cursor = SourceCursor(
            node_id=self.node_id,
            scope_id=self.scope_id,
            source=source,
            stream=stream,
            source_ref=source_ref,
            cursor_value=cursor_value,
            retrieved_at=retrieved_at or datetime.now(timezone.utc),
        )
        await self.store.upsert_cursor(cursor)
        return cursor

    async def load_cursor(self, source: str, stream: str, source_ref: str) -> SourceCursor | None:
        return await self.store.get_cursor(
            self.node_id, self.scope_id, source, stream, source_ref,
        )

    # -- curation ------------------------------------------------------------

    async def curate_and_resolve(self, epoch_id: int) -> CurationResult:
        """Seed curation for new in-window events and back-fill resolved users.

        Seeding is insert-if-absent, so manual exclusions survive re-runs.
        Events whose platform identity has no binding yet are curated with
        no user and picked up again on the next pass.
        """
        await self._require_open(epoch_id, "curation")
        pending = await self.store.get_uncurated_events(self.node_id, epoch_id)
        result = CurationResult()
        if not pending:
            return result

        resolved = await self.store.resolve_identities(
            self.identity_provider, {p.event.platform_user_id for p in pending},
        )
        seeds: list[Curation] = []
        async with self.store.transaction() as tx:
            for item in pending:
                user_id = resolved.get(item.event.platform_user_id)
                if user_id is None:
                    result.unresolved += 1
                if item.has_existing_curation:
                    if user_id is not None and await tx.update_curation_user_id(
                        self.node_id, epoch_id, item.event.id, user_id,
                    ):
                        result.backfilled += 1
                else:
                    seeds.append(Curation(
                        node_id=self.node_id,
                        epoch_id=epoch_id,
                        event_id=item.event.id,
                        user_id=user_id,
                        included=True,
                    ))
            result.seeded = await tx.insert_curation_do_nothing(seeds)

        bt.logging.info({
            "ledger_curation": {
                "epoch_id": epoch_id,
                "seeded": result.seeded,
                "backfilled": result.backfilled,
                "unresolved": result.unresolved,
            }
        })
        return result

    async def set_inclusion(
        self, epoch_id: int, event_id: str, included: bool, note: str | None = None,
    ) -> Curation:
        curation = await self.store.update_curation(
            self.node_id, epoch_id, event_id, included=included, note=note,
        )
        bt.logging.info({
            "ledger_curation_override": {
                "epoch_id": epoch_id, "event_id": event_id, "included": included,
            }
        })
        return curation

    # -- allocations ---------------------------------------------------------

    async def recompute_allocations(self, epoch_id: int) -> list[Allocation]:
        """Derive allocations from the current curation snapshot and persist them.

        Upserts every computed row and deletes rows for users that dropped
        out, so repeated runs on unchanged curation leave identical rows.
        """
        async with self.store.transaction() as tx:
            epoch = await self._require_open(epoch_id, "allocation recompute", tx)
            curated = await tx.get_curated_events(self.node_id, epoch_id)
            computed = compute_allocations(epoch, curated)
            await tx.insert_allocations(computed)
            removed = await tx.delete_stale_allocations(
                self.node_id, epoch_id, [a.user_id for a in computed],
            )
            stored = await tx.get_allocations_for_epoch(self.node_id, epoch_id)

        bt.logging.info({
            "ledger_allocations": {
                "epoch_id": epoch_id,
                "users": len(stored),
                "units": sum(a.proposed_units for a in stored),
                "removed": removed,
            }
        })
        return stored

    # -- pool ----------------------------------------------------------------

    async def add_pool_component(
        self,
        epoch_id: int,
        component_id: str,
        amount_credits: int,
        algorithm_version: str,
        inputs: dict[str, Any] | None = None,
        evidence_ref: str | None = None,
    ) -> PoolComponent:
        epoch = await self._require_open(epoch_id, "pool component insert")
        component = make_component(
            epoch, component_id, amount_credits, algorithm_version, inputs, evidence_ref,
        )
        stored = await self.store.insert_pool_component(component)
        bt.logging.info({
            "ledger_pool_component": {
                "epoch_id": epoch_id,
                "component_id": component_id,
                "amount_credits": amount_credits,
                "algorithm_version": algorithm_version,
            }
        })
        return stored

    # -- close ---------------------------------------------------------------

    async def close_epoch(
        self, epoch_id: int, pool_total_credits: int | None = None,
    ) -> PayoutStatement:
        """Close the epoch and publish its payout statement atomically.

        When pool_total_credits is omitted it is read from the pool
        components; either way the store re-checks it against the
        components inside the close transaction.
        """
        await self._require_epoch(epoch_id)
        if pool_total_credits is None:
            components = await self.store.get_pool_components_for_epoch(self.node_id, epoch_id)
            pool_total_credits = pool_total(components)

        async with self.store.transaction() as tx:
            # Status gate first: losers of a close race stop here
            await tx.close_epoch(self.node_id, epoch_id, pool_total_credits)
            allocations = await tx.get_allocations_for_epoch(self.node_id, epoch_id)
            result = compute_payouts(allocations, pool_total_credits)
            statement = await tx.insert_payout_statement(PayoutStatement(
                node_id=self.node_id,
                epoch_id=epoch_id,
                allocation_set_hash=allocation_set_hash(allocations),
                pool_total_credits=pool_total_credits,
                payouts=result.lines,
            ))

        bt.logging.info({
            "ledger_close": {
                "epoch_id": epoch_id,
                "pool_total_credits": pool_total_credits,
                "users": len(result.lines),
                "total_units": result.total_units,
                "residual_recipients": len(result.bonus_recipients),
                "allocation_set_hash": statement.allocation_set_hash[:16],
            }
        })
        if result.undistributed:
            bt.logging.warning({
                "ledger_close_undistributed": {
                    "epoch_id": epoch_id,
                    "undistributed_credits": result.undistributed,
                    "reason": "no_units_earned",
                }
            })
        return statement

    async def close_epoch_idempotent(
        self, epoch_id: int, pool_total_credits: int | None = None,
    ) -> PayoutStatement:
        """close_epoch that tolerates being retried after a successful close.

        Returns the stored statement when the epoch is already closed with
        the same pool total; a different total raises PoolTotalMismatchError.
        """
        try:
            return await self.close_epoch(epoch_id, pool_total_credits)
        except EpochNotOpenError:
            statement = await self.store.get_statement_for_epoch(self.node_id, epoch_id)
            if statement is None:
                bt.logging.error({
                    "ledger_integrity": {
                        "epoch_id": epoch_id, "problem": "closed_without_statement",
                    }
                })
                raise
            if (
                pool_total_credits is not None
                and statement.pool_total_credits != pool_total_credits
            ):
                raise PoolTotalMismatchError(
                    epoch_id, pool_total_credits, statement.pool_total_credits,
                ) from None
            bt.logging.info({"ledger_close": {"epoch_id": epoch_id, "already_closed": True}})
            return statement

    # -- signing -------------------------------------------------------------

    async def sign_statement(
        self, epoch_id: int, wallet: Any, context: SigningContext | None = None,
    ) -> StatementSignature:
        """Sign the epoch's published statement with the wallet hotkey and store it."""
        epoch = await self._require_epoch(epoch_id)
        statement = await self.store.get_statement_for_epoch(self.node_id, epoch_id)
        if statement is None:
            raise ConflictError(f"epoch {epoch_id} has no statement (status={epoch.status.value})")
        signature = sign_statement(statement, wallet, context)
        stored = await self.store.insert_statement_signature(signature)
        bt.logging.info({
            "ledger_statement_signed": {
                "epoch_id": epoch_id,
                "statement_id": statement.id,
                "signer": stored.signer_hotkey,
            }
        })
        return stored


__all__ = ["CurationResult", "EpochLedger"]
