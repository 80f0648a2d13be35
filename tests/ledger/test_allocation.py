"""Tests for the allocation calculator and the weight table it prices with."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from epochledger.ledger.allocation import compute_allocations
from epochledger.ledger.errors import (
    ConfigurationError,
    InvalidWeightConfigError,
    UnknownEventTypeError,
)
from epochledger.ledger.models import CuratedEvent, Epoch, WeightConfig


def _epoch(weights: dict[str, int] | None = None, epoch_id: int = 7) -> Epoch:
    return Epoch(
        id=epoch_id,
        node_id="node-a",
        scope_id="scope-main",
        period_start=datetime(2025, 1, 1, tzinfo=timezone.utc),
        period_end=datetime(2025, 1, 8, tzinfo=timezone.utc),
        weight_config=WeightConfig.parse(weights or {"pr_merged": 8000, "review_submitted": 2000}),
    )


def _curated(event_id: str, event_type: str, user_id: str | None, included: bool = True, epoch_id: int = 7):
    return CuratedEvent(
        epoch_id=epoch_id, event_id=event_id, event_type=event_type,
        user_id=user_id, included=included,
    )


class TestComputeAllocations:

    def test_weighted_units_per_user(self):
        rows = [
            _curated("e1", "pr_merged", "user-1"),
            _curated("e2", "review_submitted", "user-2"),
        ]
        allocations = compute_allocations(_epoch(), rows)
        assert [(a.user_id, a.proposed_units, a.activity_count) for a in allocations] == [
            ("user-1", 8000, 1),
            ("user-2", 2000, 1),
        ]
        assert all(a.epoch_id == 7 and a.node_id == "node-a" for a in allocations)

    def test_sums_and_counts(self):
        rows = [
            _curated("e1", "pr_merged", "u"),
            _curated("e2", "pr_merged", "u"),
            _curated("e3", "review_submitted", "u"),
        ]
        (alloc,) = compute_allocations(_epoch(), rows)
        assert alloc.proposed_units == 18000
        assert alloc.activity_count == 3

    def test_excluded_and_unresolved_do_not_count(self):
        rows = [
            _curated("e1", "pr_merged", "user-1", included=False),
            _curated("e2", "pr_merged", None),
            _curated("e3", "review_submitted", "user-2"),
        ]
        allocations = compute_allocations(_epoch(), rows)
        assert [a.user_id for a in allocations] == ["user-2"]

    def test_excluded_event_with_unknown_type_is_ignored(self):
        rows = [_curated("e1", "mystery", "user-1", included=False)]
        assert compute_allocations(_epoch(), rows) == []

    def test_unknown_event_type_halts(self):
        rows = [
            _curated("e1", "pr_merged", "user-1"),
            _curated("e2", "mystery", "user-2"),
        ]
        with pytest.raises(UnknownEventTypeError) as exc:
            compute_allocations(_epoch(), rows)
        assert exc.value.event_type == "mystery"
        assert exc.value.epoch_id == 7
        assert isinstance(exc.value, ConfigurationError)
        assert "mystery" in str(exc.value)

    def test_unresolved_event_with_unknown_type_halts(self):
        rows = [_curated("e1", "mystery", None)]
        with pytest.raises(UnknownEventTypeError) as exc:
            compute_allocations(_epoch(), rows)
        assert exc.value.event_type == "mystery"

    def test_zero_weight_type_counts_activity(self):
        epoch = _epoch({"pr_merged": 5, "comment": 0})
        (alloc,) = compute_allocations(epoch, [_curated("e1", "comment", "u")])
        assert alloc.proposed_units == 0
        assert alloc.activity_count == 1

    def test_output_sorted_and_repeatable(self):
        rows = [_curated(f"e{i}", "pr_merged", f"user-{9 - i}") for i in range(10)]
        first = compute_allocations(_epoch(), rows)
        second = compute_allocations(_epoch(), list(reversed(rows)))
        assert [a.user_id for a in first] == sorted(a.user_id for a in first)
        assert first == second

    def test_rejects_other_epochs_rows(self):
        with pytest.raises(ValueError):
            compute_allocations(_epoch(), [_curated("e1", "pr_merged", "u", epoch_id=8)])


class TestWeightConfig:

    def test_parse_and_lookup(self):
        wc = WeightConfig.parse({"b": 2, "a": 1})
        assert wc.weight_for("a") == 1
        assert list(wc) == ["a", "b"]
        assert "b" in wc
        assert len(wc) == 2

    @pytest.mark.parametrize("raw", [
        {"pr_merged": -1},
        {"pr_merged": 1.5},
        {"pr_merged": "8"},
        {"": 3},
        ["pr_merged", 8],
    ])
    def test_invalid_tables_rejected(self, raw):
        with pytest.raises(InvalidWeightConfigError):
            WeightConfig.parse(raw)

    def test_frozen(self):
        wc = WeightConfig.parse({"a": 1})
        with pytest.raises(ValidationError):
            wc.root = {"a": 2}

    def test_missing_type_raises_not_zero(self):
        wc = WeightConfig.parse({"a": 1})
        with pytest.raises(UnknownEventTypeError):
            wc.weight_for("b")
        with pytest.raises(KeyError):
            wc.weight_for("b")
