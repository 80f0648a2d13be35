"""Pydantic models for the epoch activity ledger.

Domain records mirror the storage rows one-to-one. All credit and unit
quantities are Python ints; they only become strings on the wire.

Two groups:
- Domain records: Epoch, ActivityEvent, Curation, Allocation, PoolComponent,
  PayoutStatement (+ signature, cursor, identity binding supplements)
- Public API payloads: camelCase, decimal strings for every amount
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterator

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    StrictInt,
    ValidationError,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .errors import InvalidWeightConfigError, UnknownEventTypeError


# ---------------------------------------------------------------------------
# Weight configuration (pinned per epoch at creation)
# ---------------------------------------------------------------------------


class WeightConfig(RootModel[dict[str, StrictInt]]):
    """Closed mapping of event type -> integer weight.

    Loaded once when the epoch is created and never mutated afterwards.
    Lookups for a missing type raise UnknownEventTypeError rather than
    defaulting to zero.
    """

    model_config = ConfigDict(frozen=True)

    @field_validator("root")
    @classmethod
    def _check_entries(cls, value: dict[str, int]) -> dict[str, int]:
        for event_type, weight in value.items():
            if not event_type or not event_type.strip():
                raise ValueError("event type must be a non-empty string")
            if weight < 0:
                raise ValueError(f"weight for {event_type!r} must be >= 0, got {weight}")
        return dict(sorted(value.items()))

    @classmethod
    def parse(cls, raw: Any) -> WeightConfig:
        """Validate a raw mapping, raising InvalidWeightConfigError on failure."""
        if isinstance(raw, WeightConfig):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidWeightConfigError(f"invalid weight config: {e}") from e

    def weight_for(self, event_type: str, epoch_id: int | None = None) -> int:
        try:
            return self.root[event_type]
        except KeyError:
            raise UnknownEventTypeError(event_type, epoch_id) from None

    def as_dict(self) -> dict[str, int]:
        return dict(self.root)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self.root

    def __iter__(self) -> Iterator[str]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)


# ---------------------------------------------------------------------------
# Epochs
# ---------------------------------------------------------------------------


class EpochStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Epoch(BaseModel):
    """A fixed accounting period with its own weights, pool and statement."""

    id: int
    node_id: str
    scope_id: str
    period_start: datetime
    period_end: datetime
    weight_config: WeightConfig
    status: EpochStatus = EpochStatus.OPEN
    pool_total_credits: int | None = None
    opened_at: datetime | None = None
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is EpochStatus.OPEN

    def contains(self, ts: datetime) -> bool:
        """Half-open window membership: period_start <= ts < period_end."""
        return self.period_start <= ts < self.period_end


# ---------------------------------------------------------------------------
# Event intake
# ---------------------------------------------------------------------------


class ActivityEvent(BaseModel):
    """An externally produced, already-deduplicated contribution event."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    node_id: str
    scope_id: str
    source: str
    event_type: str
    platform_user_id: str
    platform_login: str | None = None
    artifact_url: str | None = None
    metadata: dict[str, Any] | None = None
    payload_hash: str = Field(min_length=1)
    producer: str
    producer_version: str
    event_time: datetime
    retrieved_at: datetime
    ingested_at: datetime | None = None


# ---------------------------------------------------------------------------
# Curation
# ---------------------------------------------------------------------------


class Curation(BaseModel):
    """Inclusion decision for one event within one epoch."""

    id: str | None = None
    node_id: str
    epoch_id: int
    event_id: str
    user_id: str | None = None
    included: bool = True
    note: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CuratedEvent(BaseModel):
    """Join of a curation row with its event's type: the allocation input."""

    model_config = ConfigDict(frozen=True)

    epoch_id: int
    event_id: str
    event_type: str
    user_id: str | None
    included: bool


class UncuratedEvent(BaseModel):
    """An in-window event that has no curation or an unresolved user."""

    event: ActivityEvent
    has_existing_curation: bool


# ---------------------------------------------------------------------------
# Allocations
# ---------------------------------------------------------------------------


class Allocation(BaseModel):
    """A user's weighted unit total for an epoch."""

    id: str | None = None
    node_id: str
    epoch_id: int
    user_id: str
    proposed_units: int = Field(ge=0)
    activity_count: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class PoolComponent(BaseModel):
    """One named funding source contributing credits to an epoch's budget."""

    id: str | None = None
    node_id: str
    epoch_id: int
    component_id: str = Field(min_length=1)
    algorithm_version: str = Field(min_length=1)
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    amount_credits: int = Field(ge=0)
    evidence_ref: str | None = None
    computed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Payout statement
# ---------------------------------------------------------------------------


class PayoutLine(BaseModel):
    """One user's line in a payout statement.

    `share` is display-only (6 decimal places, truncated) and never feeds
    back into amount_credits. Integers serialize as strings in JSON mode.
    """

    user_id: str
    total_units: int
    share: str
    amount_credits: int

    @field_serializer("total_units", "amount_credits", when_used="json")
    def _as_decimal_string(self, value: int) -> str:
        return str(value)


class PayoutStatement(BaseModel):
    """Immutable record of how a closed epoch's pool was distributed."""

    id: str | None = None
    node_id: str
    epoch_id: int
    allocation_set_hash: str
    pool_total_credits: int
    payouts: list[PayoutLine] = Field(default_factory=list)
    created_at: datetime | None = None

    @property
    def distributed_credits(self) -> int:
        return sum(line.amount_credits for line in self.payouts)


class StatementSignature(BaseModel):
    """A hotkey signature over a published payout statement."""

    id: str | None = None
    node_id: str
    statement_id: str
    signer_hotkey: str
    signature: str
    signed_at: datetime


# ---------------------------------------------------------------------------
# Ingestion support
# ---------------------------------------------------------------------------


class SourceCursor(BaseModel):
    """Incremental-sync position for one source stream."""

    node_id: str
    scope_id: str
    source: str
    stream: str
    source_ref: str
    cursor_value: str
    retrieved_at: datetime | None = None


class IdentityBinding(BaseModel):
    """Maps a platform identity onto a ledger user id."""

    provider: str
    external_id: str
    user_id: str


# ---------------------------------------------------------------------------
# Public API payloads
# ---------------------------------------------------------------------------


class _PublicModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PublicEpoch(_PublicModel):
    id: str
    status: EpochStatus
    pool_total_credits: str
    period_start: datetime
    period_end: datetime
    closed_at: datetime | None = None

    @classmethod
    def from_epoch(cls, epoch: Epoch) -> PublicEpoch:
        return cls(
            id=str(epoch.id),
            status=epoch.status,
            pool_total_credits=str(epoch.pool_total_credits or 0),
            period_start=epoch.period_start,
            period_end=epoch.period_end,
            closed_at=epoch.closed_at,
        )


class EpochListPage(_PublicModel):
    epochs: list[PublicEpoch] = Field(default_factory=list)
    total: int
    limit: int
    offset: int


class PublicAllocation(_PublicModel):
    id: str
    user_id: str
    proposed_units: str
    activity_count: int

    @classmethod
    def from_allocation(cls, alloc: Allocation) -> PublicAllocation:
        return cls(
            id=alloc.id or "",
            user_id=alloc.user_id,
            proposed_units=str(alloc.proposed_units),
            activity_count=alloc.activity_count,
        )

    def to_allocation(self, node_id: str, epoch_id: int) -> Allocation:
        return Allocation(
            id=self.id,
            node_id=node_id,
            epoch_id=epoch_id,
            user_id=self.user_id,
            proposed_units=int(self.proposed_units),
            activity_count=self.activity_count,
        )


class EpochAllocationsPayload(_PublicModel):
    epoch_id: str
    allocations: list[PublicAllocation] = Field(default_factory=list)


class PublicSignature(_PublicModel):
    signer_hotkey: str
    signature: str
    signed_at: datetime


class PublicStatement(_PublicModel):
    id: str
    allocation_set_hash: str
    pool_total_credits: str
    payouts: list[PayoutLine] = Field(default_factory=list)
    signatures: list[PublicSignature] = Field(default_factory=list)
    created_at: datetime | None = None

    @classmethod
    def from_statement(
        cls,
        statement: PayoutStatement,
        signatures: list[StatementSignature] | None = None,
    ) -> PublicStatement:
        return cls(
            id=statement.id or "",
            allocation_set_hash=statement.allocation_set_hash,
            pool_total_credits=str(statement.pool_total_credits),
            payouts=statement.payouts,
            signatures=[
                PublicSignature(
                    signer_hotkey=s.signer_hotkey,
                    signature=s.signature,
                    signed_at=s.signed_at,
                )
                for s in signatures or []
            ],
            created_at=statement.created_at,
        )

    def to_statement(self, node_id: str, epoch_id: int) -> PayoutStatement:
        return PayoutStatement(
            id=self.id,
            node_id=node_id,
            epoch_id=epoch_id,
            allocation_set_hash=self.allocation_set_hash,
            pool_total_credits=int(self.pool_total_credits),
            payouts=self.payouts,
            created_at=self.created_at,
        )

    def to_signatures(self, node_id: str) -> list[StatementSignature]:
        return [
            StatementSignature(
                node_id=node_id,
                statement_id=self.id,
                signer_hotkey=s.signer_hotkey,
                signature=s.signature,
                signed_at=s.signed_at,
            )
            for s in self.signatures
        ]


class EpochStatementPayload(_PublicModel):
    epoch_id: str
    statement: PublicStatement | None = None


__all__ = [
    "ActivityEvent",
    "Allocation",
    "CuratedEvent",
    "Curation",
    "Epoch",
    "EpochAllocationsPayload",
    "EpochListPage",
    "EpochStatementPayload",
    "EpochStatus",
    "IdentityBinding",
    "PayoutLine",
    "PayoutStatement",
    "PoolComponent",
    "PublicAllocation",
    "PublicEpoch",
    "PublicSignature",
    "PublicStatement",
    "SourceCursor",
    "StatementSignature",
    "UncuratedEvent",
    "WeightConfig",
]
