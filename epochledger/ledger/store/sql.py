"""SQL ledger store on a SQLAlchemy async engine.

Works against SQLite (aiosqlite) and PostgreSQL (asyncpg). Conflict
handling uses each dialect's INSERT .. ON CONFLICT, which both support.

Write-once tables (events, pool components, statements, signatures) raise
DuplicateRecordError on a second insert. Curation seeding and allocation
recompute are the only conflict-tolerant writes, and neither is allowed
once the epoch is closed.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Mapping

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from epochledger.database.schema import (
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
from epochledger.ledger.errors import (
    ConfigurationError,
    CurationNotFoundError,
    DuplicateRecordError,
    EpochClosedError,
    EpochNotFoundError,
    EpochNotOpenError,
    LedgerValidationError,
    PoolTotalMismatchError,
)
from epochledger.ledger.models import (
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

_epochs = EpochRow.__table__
_events = ActivityEventRow.__table__
_curation = CurationRow.__table__
_allocations = AllocationRow.__table__
_pool = PoolComponentRow.__table__
_statements = PayoutStatementRow.__table__
_signatures = StatementSignatureRow.__table__
_cursors = SourceCursorRow.__table__
_bindings = UserBindingRow.__table__


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _insert(conn: AsyncConnection, table: Any):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise ConfigurationError(f"unsupported database dialect: {dialect}")


def _epoch_from_row(row: Mapping[str, Any]) -> Epoch:
    return Epoch(
        id=int(row["id"]),
        node_id=row["node_id"],
        scope_id=row["scope_id"],
        period_start=_utc(row["period_start"]),
        period_end=_utc(row["period_end"]),
        weight_config=WeightConfig.parse(row["weight_config"]),
        status=EpochStatus(row["status"]),
        pool_total_credits=(
            int(row["pool_total_credits"]) if row["pool_total_credits"] is not None else None
        ),
        opened_at=_utc(row["opened_at"]),
        closed_at=_utc(row["closed_at"]),
    )


def _event_from_row(row: Mapping[str, Any]) -> ActivityEvent:
    return ActivityEvent(
        id=row["id"],
        node_id=row["node_id"],
        scope_id=row["scope_id"],
        source=row["source"],
        event_type=row["event_type"],
        platform_user_id=row["platform_user_id"],
        platform_login=row["platform_login"],
        artifact_url=row["artifact_url"],
        metadata=row["metadata_json"],
        payload_hash=row["payload_hash"],
        producer=row["producer"],
        producer_version=row["producer_version"],
        event_time=_utc(row["event_time"]),
        retrieved_at=_utc(row["retrieved_at"]),
        ingested_at=_utc(row["ingested_at"]),
    )


def _curation_from_row(row: Mapping[str, Any]) -> Curation:
    return Curation(
        id=row["id"],
        node_id=row["node_id"],
        epoch_id=int(row["epoch_id"]),
        event_id=row["event_id"],
        user_id=row["user_id"],
        included=bool(row["included"]),
        note=row["note"],
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def _allocation_from_row(row: Mapping[str, Any]) -> Allocation:
    return Allocation(
        id=row["id"],
        node_id=row["node_id"],
        epoch_id=int(row["epoch_id"]),
        user_id=row["user_id"],
        proposed_units=int(row["proposed_units"]),
        activity_count=int(row["activity_count"]),
    )


def _component_from_row(row: Mapping[str, Any]) -> PoolComponent:
    return PoolComponent(
        id=row["id"],
        node_id=row["node_id"],
        epoch_id=int(row["epoch_id"]),
        component_id=row["component_id"],
        algorithm_version=row["algorithm_version"],
        inputs_json=row["inputs_json"] or {},
        amount_credits=int(row["amount_credits"]),
        evidence_ref=row["evidence_ref"],
        computed_at=_utc(row["computed_at"]),
    )


def _statement_from_row(row: Mapping[str, Any]) -> PayoutStatement:
    return PayoutStatement(
        id=row["id"],
        node_id=row["node_id"],
        epoch_id=int(row["epoch_id"]),
        allocation_set_hash=row["allocation_set_hash"],
        pool_total_credits=int(row["pool_total_credits"]),
        payouts=[PayoutLine.model_validate(p) for p in row["payouts_json"]],
        created_at=_utc(row["created_at"]),
    )


def _signature_from_row(row: Mapping[str, Any]) -> StatementSignature:
    return StatementSignature(
        id=row["id"],
        node_id=row["node_id"],
        statement_id=row["statement_id"],
        signer_hotkey=row["signer_hotkey"],
        signature=row["signature"],
        signed_at=_utc(row["signed_at"]),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SqlLedgerStore:
    """LedgerStore over an AsyncEngine.

    A store built with `conn` is bound to that connection's transaction
    (see `transaction()`); otherwise each call runs in its own transaction.
    """

    def __init__(self, engine: AsyncEngine, conn: AsyncConnection | None = None):
        self.engine = engine
        self._conn = conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlLedgerStore]:
        if self._conn is not None:
            # Nested use joins the outer transaction
            yield self
            return
        async with self.engine.begin() as conn:
            yield SqlLedgerStore(self.engine, conn)

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        if self._conn is not None:
            yield self._conn
            return
        async with self.engine.begin() as conn:
            yield conn

    async def _require_open(
        self, conn: AsyncConnection, node_id: str, epoch_id: int, operation: str,
    ) -> None:
        status = await conn.scalar(
            select(_epochs.c.status)
            .where(_epochs.c.id == epoch_id, _epochs.c.node_id == node_id)
            .with_for_update(read=True)
        )
        if status is None:
            raise EpochNotFoundError(epoch_id)
        if status != EpochStatus.OPEN.value:
            raise EpochClosedError(epoch_id, operation)

    # -- epochs --------------------------------------------------------------

    async def create_epoch(
        self,
        node_id: str,
        scope_id: str,
        period_start: datetime,
        period_end: datetime,
        weight_config: WeightConfig,
    ) -> Epoch:
        period_start, period_end = _utc(period_start), _utc(period_end)
        if period_start >= period_end:
            raise LedgerValidationError(
                f"period_start {period_start.isoformat()} must precede "
                f"period_end {period_end.isoformat()}"
            )
        weights = WeightConfig.parse(weight_config)
        try:
            async with self._begin() as conn:
                result = await conn.execute(
                    _epochs.insert().values(
                        node_id=node_id,
                        scope_id=scope_id,
                        status=EpochStatus.OPEN.value,
                        period_start=period_start,
                        period_end=period_end,
                        weight_config=weights.as_dict(),
                        opened_at=_now(),
                    )
                )
                epoch_id = int(result.inserted_primary_key[0])
                row = (
                    await conn.execute(select(_epochs).where(_epochs.c.id == epoch_id))
                ).mappings().one()
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"epoch for node {node_id} scope {scope_id} conflicts with an "
                f"existing window or open epoch"
            ) from e
        return _epoch_from_row(row)

    async def get_epoch(self, node_id: str, epoch_id: int) -> Epoch | None:
        async with self._begin() as conn:
            row = (
                await conn.execute(
                    select(_epochs).where(_epochs.c.id == epoch_id, _epochs.c.node_id == node_id)
                )
            ).mappings().first()
        return _epoch_from_row(row) if row else None

    async def get_open_epoch(self, node_id: str, scope_id: str) -> Epoch | None:
        async with self._begin() as conn:
            row = (
                await conn.execute(
                    select(_epochs).where(
                        _epochs.c.node_id == node_id,
                        _epochs.c.scope_id == scope_id,
                        _epochs.c.status == EpochStatus.OPEN.value,
                    )
                )
            ).mappings().first()
        return _epoch_from_row(row) if row else None

    async def get_epoch_by_window(
        self, node_id: str, scope_id: str, period_start: datetime, period_end: datetime,
    ) -> Epoch | None:
        async with self._begin() as conn:
            row = (
                await conn.execute(
                    select(_epochs).where(
                        _epochs.c.node_id == node_id,
                        _epochs.c.scope_id == scope_id,
                        _epochs.c.period_start == _utc(period_start),
                        _epochs.c.period_end == _utc(period_end),
                    )
                )
            ).mappings().first()
        return _epoch_from_row(row) if row else None

    async def list_closed_epochs(self, node_id: str, limit: int, offset: int) -> list[Epoch]:
        if limit < 0 or offset < 0:
            raise LedgerValidationError("limit and offset must be >= 0")
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_epochs)
                    .where(
                        _epochs.c.node_id == node_id,
                        _epochs.c.status == EpochStatus.CLOSED.value,
                    )
                    .order_by(_epochs.c.period_start.desc(), _epochs.c.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).mappings().all()
        return [_epoch_from_row(r) for r in rows]

    async def count_closed_epochs(self, node_id: str) -> int:
        async with self._begin() as conn:
            count = await conn.scalar(
                select(func.count())
                .select_from(_epochs)
                .where(
                    _epochs.c.node_id == node_id,
                    _epochs.c.status == EpochStatus.CLOSED.value,
                )
            )
        return int(count or 0)

    async def close_epoch(self, node_id: str, epoch_id: int, pool_total_credits: int) -> Epoch:
        """Gate-first close.

        The status update is the first statement so that, of two concurrent
        closes, the loser blocks on the winner's row lock and then matches
        zero rows. The pool total is recomputed from components in the same
        transaction; a mismatch raises and rolls the status back.
        """
        if pool_total_credits < 0:
            raise LedgerValidationError(
                f"pool_total_credits must be >= 0, got {pool_total_credits}"
            )
        async with self._begin() as conn:
            result = await conn.execute(
                update(_epochs)
                .where(
                    _epochs.c.id == epoch_id,
                    _epochs.c.node_id == node_id,
                    _epochs.c.status == EpochStatus.OPEN.value,
                )
                .values(
                    status=EpochStatus.CLOSED.value,
                    pool_total_credits=pool_total_credits,
                    closed_at=_now(),
                )
            )
            if result.rowcount != 1:
                status = await conn.scalar(
                    select(_epochs.c.status).where(
                        _epochs.c.id == epoch_id, _epochs.c.node_id == node_id,
                    )
                )
                if status is None:
                    raise EpochNotFoundError(epoch_id)
                raise EpochNotOpenError(epoch_id, status)

            computed = await conn.scalar(
                select(func.coalesce(func.sum(_pool.c.amount_credits), 0)).where(
                    _pool.c.epoch_id == epoch_id, _pool.c.node_id == node_id,
                )
            )
            if int(computed) != pool_total_credits:
                raise PoolTotalMismatchError(epoch_id, pool_total_credits, int(computed))

            row = (
                await conn.execute(select(_epochs).where(_epochs.c.id == epoch_id))
            ).mappings().one()
        return _epoch_from_row(row)

    # -- activity ------------------------------------------------------------

    async def insert_activity_events(self, events: Iterable[ActivityEvent]) -> int:
        now = _now()
        rows = [
            {
                "node_id": e.node_id,
                "id": e.id,
                "scope_id": e.scope_id,
                "source": e.source,
                "event_type": e.event_type,
                "platform_user_id": e.platform_user_id,
                "platform_login": e.platform_login,
                "artifact_url": e.artifact_url,
                "metadata_json": e.metadata,
                "payload_hash": e.payload_hash,
                "producer": e.producer,
                "producer_version": e.producer_version,
                "event_time": _utc(e.event_time),
                "retrieved_at": _utc(e.retrieved_at),
                "ingested_at": now,
            }
            for e in events
        ]
        if not rows:
            return 0
        try:
            async with self._begin() as conn:
                await conn.execute(_events.insert(), rows)
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"activity batch of {len(rows)} rejected: duplicate event id"
            ) from e
        return len(rows)

    async def get_activity_for_window(
        self, node_id: str, scope_id: str, period_start: datetime, period_end: datetime,
    ) -> list[ActivityEvent]:
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_events)
                    .where(
                        _events.c.node_id == node_id,
                        _events.c.scope_id == scope_id,
                        _events.c.event_time >= _utc(period_start),
                        _events.c.event_time < _utc(period_end),
                    )
                    .order_by(_events.c.event_time, _events.c.id)
                )
            ).mappings().all()
        return [_event_from_row(r) for r in rows]

    # -- curation ------------------------------------------------------------

    async def insert_curation_do_nothing(self, rows: Iterable[Curation]) -> int:
        by_epoch: dict[tuple[str, int], list[Curation]] = defaultdict(list)
        for row in rows:
            by_epoch[(row.node_id, row.epoch_id)].append(row)
        if not by_epoch:
            return 0

        now = _now()
        inserted = 0
        async with self._begin() as conn:
            for (node_id, epoch_id), batch in sorted(by_epoch.items()):
                await self._require_open(conn, node_id, epoch_id, "curation seeding")
                for row in batch:
                    stmt = (
                        _insert(conn, _curation)
                        .values(
                            id=row.id or _new_id(),
                            node_id=node_id,
                            epoch_id=epoch_id,
                            event_id=row.event_id,
                            user_id=row.user_id,
                            included=row.included,
                            note=row.note,
                            created_at=now,
                            updated_at=now,
                        )
                        .on_conflict_do_nothing(index_elements=["epoch_id", "event_id"])
                    )
                    result = await conn.execute(stmt)
                    inserted += max(result.rowcount, 0)
        return inserted

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
        values: dict[str, Any] = {"updated_at": _now()}
        if included is not None:
            values["included"] = included
        if user_id is not None:
            values["user_id"] = user_id
        if note is not None:
            values["note"] = note

        where = and_(
            _curation.c.node_id == node_id,
            _curation.c.epoch_id == epoch_id,
            _curation.c.event_id == event_id,
        )
        async with self._begin() as conn:
            await self._require_open(conn, node_id, epoch_id, "curation update")
            result = await conn.execute(update(_curation).where(where).values(**values))
            if result.rowcount != 1:
                raise CurationNotFoundError(epoch_id, event_id)
            row = (await conn.execute(select(_curation).where(where))).mappings().one()
        return _curation_from_row(row)

    async def update_curation_user_id(
        self, node_id: str, epoch_id: int, event_id: str, user_id: str,
    ) -> bool:
        async with self._begin() as conn:
            await self._require_open(conn, node_id, epoch_id, "identity back-fill")
            result = await conn.execute(
                update(_curation)
                .where(
                    _curation.c.node_id == node_id,
                    _curation.c.epoch_id == epoch_id,
                    _curation.c.event_id == event_id,
                    _curation.c.user_id.is_(None),
                )
                .values(user_id=user_id, updated_at=_now())
            )
        return result.rowcount == 1

    async def get_curation_for_epoch(self, node_id: str, epoch_id: int) -> list[Curation]:
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_curation)
                    .where(_curation.c.node_id == node_id, _curation.c.epoch_id == epoch_id)
                    .order_by(_curation.c.event_id)
                )
            ).mappings().all()
        return [_curation_from_row(r) for r in rows]

    async def get_curated_events(self, node_id: str, epoch_id: int) -> list[CuratedEvent]:
        """Curation rows joined to their events, limited to the epoch's scope."""
        join = _curation.join(
            _epochs,
            and_(
                _epochs.c.node_id == _curation.c.node_id,
                _epochs.c.id == _curation.c.epoch_id,
            ),
        ).join(
            _events,
            and_(
                _events.c.node_id == _curation.c.node_id,
                _events.c.id == _curation.c.event_id,
                _events.c.scope_id == _epochs.c.scope_id,
            ),
        )
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(
                        _curation.c.epoch_id,
                        _curation.c.event_id,
                        _curation.c.user_id,
                        _curation.c.included,
                        _events.c.event_type,
                    )
                    .select_from(join)
                    .where(_curation.c.node_id == node_id, _curation.c.epoch_id == epoch_id)
                    .order_by(_curation.c.event_id)
                )
            ).mappings().all()
        return [
            CuratedEvent(
                epoch_id=int(r["epoch_id"]),
                event_id=r["event_id"],
                event_type=r["event_type"],
                user_id=r["user_id"],
                included=bool(r["included"]),
            )
            for r in rows
        ]

    async def get_uncurated_events(self, node_id: str, epoch_id: int) -> list[UncuratedEvent]:
        """In-window events with no curation row, or with an unresolved user."""
        epoch = await self.get_epoch(node_id, epoch_id)
        if epoch is None:
            raise EpochNotFoundError(epoch_id)

        join = _events.outerjoin(
            _curation,
            and_(
                _curation.c.epoch_id == epoch_id,
                _curation.c.event_id == _events.c.id,
            ),
        )
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_events, _curation.c.id.label("curation_id"))
                    .select_from(join)
                    .where(
                        _events.c.node_id == node_id,
                        _events.c.scope_id == epoch.scope_id,
                        _events.c.event_time >= epoch.period_start,
                        _events.c.event_time < epoch.period_end,
                        or_(_curation.c.id.is_(None), _curation.c.user_id.is_(None)),
                    )
                    .order_by(_events.c.event_time, _events.c.id)
                )
            ).mappings().all()
        return [
            UncuratedEvent(
                event=_event_from_row(r),
                has_existing_curation=r["curation_id"] is not None,
            )
            for r in rows
        ]

    # -- identity ------------------------------------------------------------

    async def insert_user_bindings(self, bindings: Iterable[IdentityBinding]) -> int:
        inserted = 0
        async with self._begin() as conn:
            for b in bindings:
                result = await conn.execute(
                    _insert(conn, _bindings)
                    .values(provider=b.provider, external_id=b.external_id, user_id=b.user_id)
                    .on_conflict_do_nothing(index_elements=["provider", "external_id"])
                )
                inserted += max(result.rowcount, 0)
        return inserted

    async def resolve_identities(
        self, provider: str, external_ids: Iterable[str],
    ) -> dict[str, str]:
        unique_ids = sorted(set(external_ids))
        if not unique_ids:
            return {}
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_bindings.c.external_id, _bindings.c.user_id).where(
                        _bindings.c.provider == provider,
                        _bindings.c.external_id.in_(unique_ids),
                    )
                )
            ).all()
        return {external_id: user_id for external_id, user_id in rows}

    # -- allocations ---------------------------------------------------------

    async def insert_allocations(self, rows: Iterable[Allocation]) -> int:
        by_epoch: dict[tuple[str, int], list[Allocation]] = defaultdict(list)
        for row in rows:
            by_epoch[(row.node_id, row.epoch_id)].append(row)
        if not by_epoch:
            return 0

        now = _now()
        written = 0
        async with self._begin() as conn:
            for (node_id, epoch_id), batch in sorted(by_epoch.items()):
                await self._require_open(conn, node_id, epoch_id, "allocation write")
                for row in batch:
                    stmt = _insert(conn, _allocations).values(
                        id=row.id or _new_id(),
                        node_id=node_id,
                        epoch_id=epoch_id,
                        user_id=row.user_id,
                        proposed_units=row.proposed_units,
                        activity_count=row.activity_count,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["epoch_id", "user_id"],
                        set_={
                            "proposed_units": stmt.excluded.proposed_units,
                            "activity_count": stmt.excluded.activity_count,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    await conn.execute(stmt)
                    written += 1
        return written

    async def delete_stale_allocations(
        self, node_id: str, epoch_id: int, keep_user_ids: Iterable[str],
    ) -> int:
        keep = sorted(set(keep_user_ids))
        stmt = delete(_allocations).where(
            _allocations.c.node_id == node_id,
            _allocations.c.epoch_id == epoch_id,
        )
        if keep:
            stmt = stmt.where(_allocations.c.user_id.not_in(keep))
        async with self._begin() as conn:
            await self._require_open(conn, node_id, epoch_id, "allocation delete")
            result = await conn.execute(stmt)
        return max(result.rowcount, 0)

    async def get_allocations_for_epoch(self, node_id: str, epoch_id: int) -> list[Allocation]:
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_allocations)
                    .where(_allocations.c.node_id == node_id, _allocations.c.epoch_id == epoch_id)
                    .order_by(_allocations.c.user_id)
                )
            ).mappings().all()
        return [_allocation_from_row(r) for r in rows]

    # -- pool ----------------------------------------------------------------

    async def insert_pool_component(self, component: PoolComponent) -> PoolComponent:
        stored = component.model_copy(
            update={"id": component.id or _new_id(), "computed_at": _utc(component.computed_at) or _now()}
        )
        try:
            async with self._begin() as conn:
                await self._require_open(
                    conn, component.node_id, component.epoch_id, "pool component insert",
                )
                await conn.execute(
                    _pool.insert().values(
                        id=stored.id,
                        node_id=stored.node_id,
                        epoch_id=stored.epoch_id,
                        component_id=stored.component_id,
                        algorithm_version=stored.algorithm_version,
                        inputs_json=stored.inputs_json,
                        amount_credits=stored.amount_credits,
                        evidence_ref=stored.evidence_ref,
                        computed_at=stored.computed_at,
                    )
                )
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"pool component {component.component_id!r} already recorded "
                f"for epoch {component.epoch_id}"
            ) from e
        return stored

    async def get_pool_components_for_epoch(
        self, node_id: str, epoch_id: int,
    ) -> list[PoolComponent]:
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_pool)
                    .where(_pool.c.node_id == node_id, _pool.c.epoch_id == epoch_id)
                    .order_by(_pool.c.component_id)
                )
            ).mappings().all()
        return [_component_from_row(r) for r in rows]

    # -- statements ----------------------------------------------------------

    async def insert_payout_statement(self, statement: PayoutStatement) -> PayoutStatement:
        stored = statement.model_copy(
            update={"id": statement.id or _new_id(), "created_at": _utc(statement.created_at) or _now()}
        )
        try:
            async with self._begin() as conn:
                await conn.execute(
                    _statements.insert().values(
                        id=stored.id,
                        node_id=stored.node_id,
                        epoch_id=stored.epoch_id,
                        allocation_set_hash=stored.allocation_set_hash,
                        pool_total_credits=stored.pool_total_credits,
                        payouts_json=[p.model_dump(mode="json") for p in stored.payouts],
                        created_at=stored.created_at,
                    )
                )
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"payout statement already exists for epoch {statement.epoch_id}"
            ) from e
        return stored

    async def get_statement_for_epoch(
        self, node_id: str, epoch_id: int,
    ) -> PayoutStatement | None:
        async with self._begin() as conn:
            row = (
                await conn.execute(
                    select(_statements).where(
                        _statements.c.node_id == node_id, _statements.c.epoch_id == epoch_id,
                    )
                )
            ).mappings().first()
        return _statement_from_row(row) if row else None

    async def insert_statement_signature(
        self, signature: StatementSignature,
    ) -> StatementSignature:
        stored = signature.model_copy(
            update={"id": signature.id or _new_id(), "signed_at": _utc(signature.signed_at)}
        )
        try:
            async with self._begin() as conn:
                await conn.execute(
                    _signatures.insert().values(
                        id=stored.id,
                        node_id=stored.node_id,
                        statement_id=stored.statement_id,
                        signer_hotkey=stored.signer_hotkey,
                        signature=stored.signature,
                        signed_at=stored.signed_at,
                    )
                )
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"statement {signature.statement_id} already signed by {signature.signer_hotkey}"
            ) from e
        return stored

    async def get_signatures_for_statement(
        self, node_id: str, statement_id: str,
    ) -> list[StatementSignature]:
        async with self._begin() as conn:
            rows = (
                await conn.execute(
                    select(_signatures)
                    .where(
                        _signatures.c.node_id == node_id,
                        _signatures.c.statement_id == statement_id,
                    )
                    .order_by(_signatures.c.signed_at, _signatures.c.signer_hotkey)
                )
            ).mappings().all()
        return [_signature_from_row(r) for r in rows]

    # -- cursors -------------------------------------------------------------

    async def upsert_cursor(self, cursor: SourceCursor) -> None:
        async with self._begin() as conn:
            stmt = _insert(conn, _cursors).values(
                node_id=cursor.node_id,
                scope_id=cursor.scope_id,
                source=cursor.source,
                stream=cursor.stream,
                source_ref=cursor.source_ref,
                cursor_value=cursor.cursor_value,
                retrieved_at=_utc(cursor.retrieved_at) or _now(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["node_id", "scope_id", "source", "stream", "source_ref"],
                set_={
                    "cursor_value": stmt.excluded.cursor_value,
                    "retrieved_at": stmt.excluded.retrieved_at,
                },
            )
            await conn.execute(stmt)

    async def get_cursor(
        self, node_id: str, scope_id: str, source: str, stream: str, source_ref: str,
    ) -> SourceCursor | None:
        async with self._begin() as conn:
            row = (
                await conn.execute(
                    select(_cursors).where(
                        _cursors.c.node_id == node_id,
                        _cursors.c.scope_id == scope_id,
                        _cursors.c.source == source,
                        _cursors.c.stream == stream,
                        _cursors.c.source_ref == source_ref,
                    )
                )
            ).mappings().first()
        if row is None:
            return None
        return SourceCursor(
            node_id=row["node_id"],
            scope_id=row["scope_id"],
            source=row["source"],
            stream=row["stream"],
            source_ref=row["source_ref"],
            cursor_value=row["cursor_value"],
            retrieved_at=_utc(row["retrieved_at"]),
        )


__all__ = ["SqlLedgerStore"]
