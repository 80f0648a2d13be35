"""Epoch ledger tables.

All credit / unit columns are BIGINT. Activity events, pool components,
payout statements and statement signatures are write-once; epochs change
exactly once (open -> closed).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONDoc


class EpochRow(Base):
    """One accounting period per (node, scope, window); one open per (node, scope)."""

    __tablename__ = "epochs"
    __table_args__ = (
        CheckConstraint("status IN ('open', 'closed')", name="epochs_status_check"),
        CheckConstraint("period_start < period_end", name="epochs_period_order"),
        UniqueConstraint(
            "node_id", "scope_id", "period_start", "period_end",
            name="epochs_window_unique",
        ),
        Index(
            "epochs_one_open_per_scope",
            "node_id", "scope_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="open",
        comment="open | closed (terminal)",
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
        comment="Exclusive upper bound of the window",
    )
    weight_config: Mapped[dict[str, int]] = mapped_column(
        JSONDoc, nullable=False,
        comment="event_type -> integer weight, pinned at creation",
    )
    pool_total_credits: Mapped[int | None] = mapped_column(
        BigInteger,
        comment="Set once, at close, to the sum of pool components",
    )
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ActivityEventRow(Base):
    """Raw contribution events, epoch-agnostic and append-only."""

    __tablename__ = "activity_events"

    node_id: Mapped[str] = mapped_column(String, primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    platform_user_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_login: Mapped[str | None] = mapped_column(String)
    artifact_url: Mapped[str | None] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc)
    payload_hash: Mapped[str] = mapped_column(String, nullable=False)
    producer: Mapped[str] = mapped_column(String, nullable=False)
    producer_version: Mapped[str] = mapped_column(String, nullable=False)
    event_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True,
    )
    retrieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class CurationRow(Base):
    """Per-epoch inclusion decision; seeding never overwrites an existing row."""

    __tablename__ = "activity_curation"
    __table_args__ = (
        UniqueConstraint("epoch_id", "event_id", name="activity_curation_epoch_event_unique"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("epochs.id"), nullable=False, index=True,
    )
    event_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str | None] = mapped_column(
        String, comment="NULL until the platform identity is resolved",
    )
    included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    note: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class AllocationRow(Base):
    """Derived per-user unit totals; recomputed by idempotent upsert."""

    __tablename__ = "epoch_allocations"
    __table_args__ = (
        UniqueConstraint("epoch_id", "user_id", name="epoch_allocations_epoch_user_unique"),
        CheckConstraint("proposed_units >= 0", name="epoch_allocations_units_nonneg"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("epochs.id"), nullable=False, index=True,
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    proposed_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    activity_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class PoolComponentRow(Base):
    """One funding source per (epoch, component_id); append-only."""

    __tablename__ = "epoch_pool_components"
    __table_args__ = (
        UniqueConstraint("epoch_id", "component_id", name="epoch_pool_components_epoch_component_unique"),
        CheckConstraint("amount_credits >= 0", name="epoch_pool_components_amount_nonneg"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("epochs.id"), nullable=False, index=True,
    )
    component_id: Mapped[str] = mapped_column(String, nullable=False)
    algorithm_version: Mapped[str] = mapped_column(String, nullable=False)
    inputs_json: Mapped[dict[str, Any]] = mapped_column(JSONDoc, nullable=False)
    amount_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    evidence_ref: Mapped[str | None] = mapped_column(String)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class PayoutStatementRow(Base):
    """Exactly one per closed epoch, written in the close transaction."""

    __tablename__ = "payout_statements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("epochs.id"), nullable=False, unique=True,
    )
    allocation_set_hash: Mapped[str] = mapped_column(String, nullable=False)
    pool_total_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payouts_json: Mapped[list[dict[str, str]]] = mapped_column(
        JSONDoc, nullable=False,
        comment="[{user_id, total_units, share, amount_credits}] as strings",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class StatementSignatureRow(Base):
    __tablename__ = "statement_signatures"
    __table_args__ = (
        UniqueConstraint("statement_id", "signer_hotkey", name="statement_signatures_signer_unique"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_id: Mapped[str] = mapped_column(String, nullable=False)
    statement_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payout_statements.id"), nullable=False, index=True,
    )
    signer_hotkey: Mapped[str] = mapped_column(String, nullable=False)
    signature: Mapped[str] = mapped_column(String, nullable=False)
    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SourceCursorRow(Base):
    __tablename__ = "source_cursors"

    node_id: Mapped[str] = mapped_column(String, primary_key=True)
    scope_id: Mapped[str] = mapped_column(String, primary_key=True)
    source: Mapped[str] = mapped_column(String, primary_key=True)
    stream: Mapped[str] = mapped_column(String, primary_key=True)
    source_ref: Mapped[str] = mapped_column(String, primary_key=True)
    cursor_value: Mapped[str] = mapped_column(String, nullable=False)
    retrieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserBindingRow(Base):
    """Platform identity -> ledger user id."""

    __tablename__ = "user_bindings"

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    external_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)


__all__ = [
    "ActivityEventRow",
    "AllocationRow",
    "CurationRow",
    "EpochRow",
    "PayoutStatementRow",
    "PoolComponentRow",
    "SourceCursorRow",
    "StatementSignatureRow",
    "UserBindingRow",
]
