"""SqlLedgerStore tests against a real SQLite database."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from epochledger.ledger.errors import (
    CurationNotFoundError,
    DuplicateRecordError,
    EpochClosedError,
    EpochNotFoundError,
    EpochNotOpenError,
    LedgerValidationError,
    PoolTotalMismatchError,
)
from epochledger.ledger.models import (
    Allocation,
    Curation,
    EpochStatus,
    IdentityBinding,
    PayoutLine,
    PayoutStatement,
    PoolComponent,
    SourceCursor,
)


def _component(epoch, component_id: str, amount: int) -> PoolComponent:
    return PoolComponent(
        node_id=epoch.node_id,
        epoch_id=epoch.id,
        component_id=component_id,
        algorithm_version="v0",
        inputs_json={"amount": str(amount)},
        amount_credits=amount,
    )


def _alloc(epoch, user_id: str, units: int, count: int = 1) -> Allocation:
    return Allocation(
        node_id=epoch.node_id, epoch_id=epoch.id, user_id=user_id,
        proposed_units=units, activity_count=count,
    )


@pytest.mark.asyncio
class TestEpochs:

    async def test_create_and_read_back(self, store, epoch, weights):
        fetched = await store.get_epoch(epoch.node_id, epoch.id)
        assert fetched is not None
        assert fetched.status is EpochStatus.OPEN
        assert fetched.weight_config == weights
        assert fetched.period_start == epoch.period_start
        assert fetched.period_start.tzinfo is not None
        assert fetched.pool_total_credits is None

    async def test_one_open_epoch_per_scope(self, store, epoch, weights):
        with pytest.raises(DuplicateRecordError):
            await store.create_epoch(
                epoch.node_id, epoch.scope_id,
                epoch.period_end, epoch.period_end + timedelta(days=7), weights,
            )
        # A different scope on the same node is independent
        other = await store.create_epoch(
            epoch.node_id, "scope-other", epoch.period_start, epoch.period_end, weights,
        )
        assert other.id != epoch.id

    async def test_window_unique_even_after_close(self, store, epoch, weights):
        await store.close_epoch(epoch.node_id, epoch.id, 0)
        with pytest.raises(DuplicateRecordError):
            await store.create_epoch(
                epoch.node_id, epoch.scope_id, epoch.period_start, epoch.period_end, weights,
            )

    async def test_rejects_inverted_window(self, store, epoch, weights):
        with pytest.raises(LedgerValidationError):
            await store.create_epoch("node-b", "s", epoch.period_end, epoch.period_start, weights)

    async def test_lookup_by_window_and_open(self, store, epoch):
        by_window = await store.get_epoch_by_window(
            epoch.node_id, epoch.scope_id, epoch.period_start, epoch.period_end,
        )
        assert by_window.id == epoch.id
        open_epoch = await store.get_open_epoch(epoch.node_id, epoch.scope_id)
        assert open_epoch.id == epoch.id
        assert await store.get_open_epoch("node-b", epoch.scope_id) is None

    async def test_tenant_scoping(self, store, epoch):
        assert await store.get_epoch("node-b", epoch.id) is None

    async def test_list_and_count_closed(self, store, epoch, weights):
        assert await store.count_closed_epochs(epoch.node_id) == 0
        await store.close_epoch(epoch.node_id, epoch.id, 0)
        nxt = await store.create_epoch(
            epoch.node_id, epoch.scope_id,
            epoch.period_end, epoch.period_end + timedelta(days=7), weights,
        )
        await store.close_epoch(epoch.node_id, nxt.id, 0)

        closed = await store.list_closed_epochs(epoch.node_id, limit=10, offset=0)
        assert [e.id for e in closed] == [nxt.id, epoch.id]
        assert await store.count_closed_epochs(epoch.node_id) == 2
        assert [e.id for e in await store.list_closed_epochs(epoch.node_id, 1, 1)] == [epoch.id]
        assert await store.list_closed_epochs("node-b", 10, 0) == []


@pytest.mark.asyncio
class TestClose:

    async def test_close_sets_fields_once(self, store, epoch):
        await store.insert_pool_component(_component(epoch, "base_issuance", 700))
        await store.insert_pool_component(_component(epoch, "bonus", 300))
        closed = await store.close_epoch(epoch.node_id, epoch.id, 1000)
        assert closed.status is EpochStatus.CLOSED
        assert closed.pool_total_credits == 1000
        assert closed.closed_at is not None

        with pytest.raises(EpochNotOpenError):
            await store.close_epoch(epoch.node_id, epoch.id, 1000)

    async def test_pool_mismatch_rolls_back(self, store, epoch):
        await store.insert_pool_component(_component(epoch, "base_issuance", 700))
        with pytest.raises(PoolTotalMismatchError) as exc:
            await store.close_epoch(epoch.node_id, epoch.id, 1000)
        assert exc.value.computed == 700

        still_open = await store.get_epoch(epoch.node_id, epoch.id)
        assert still_open.status is EpochStatus.OPEN
        assert still_open.pool_total_credits is None

    async def test_close_unknown_epoch(self, store, epoch):
        with pytest.raises(EpochNotFoundError):
            await store.close_epoch(epoch.node_id, 999999, 0)
        with pytest.raises(EpochNotFoundError):
            await store.close_epoch("node-b", epoch.id, 0)

    async def test_concurrent_close_exactly_one_wins(self, store, epoch):
        await store.insert_pool_component(_component(epoch, "base_issuance", 50))

        async def attempt():
            async with store.transaction() as tx:
                await tx.close_epoch(epoch.node_id, epoch.id, 50)
                await tx.insert_payout_statement(PayoutStatement(
                    node_id=epoch.node_id, epoch_id=epoch.id,
                    allocation_set_hash="h", pool_total_credits=50, payouts=[],
                ))

        results = await asyncio.gather(*(attempt() for _ in range(4)), return_exceptions=True)
        successes = [r for r in results if r is None]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 3
        assert all(isinstance(f, EpochNotOpenError) for f in failures)
        assert await store.get_statement_for_epoch(epoch.node_id, epoch.id) is not None

    async def test_transaction_rolls_back_everything(self, store, epoch):
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.close_epoch(epoch.node_id, epoch.id, 0)
                raise RuntimeError("boom")
        assert (await store.get_epoch(epoch.node_id, epoch.id)).is_open


@pytest.mark.asyncio
class TestActivity:

    async def test_batch_insert_and_window_query(self, store, epoch, make_event):
        events = [
            make_event("e1", "alice"),
            make_event("e2", "bob", event_time=epoch.period_end - timedelta(microseconds=1)),
            make_event("e3", "carol", event_time=epoch.period_end),  # exclusive end
            make_event("e4", "dave", event_time=epoch.period_start - timedelta(seconds=1)),
        ]
        assert await store.insert_activity_events(events) == 4

        in_window = await store.get_activity_for_window(
            epoch.node_id, epoch.scope_id, epoch.period_start, epoch.period_end,
        )
        assert [e.id for e in in_window] == ["e1", "e2"]
        assert in_window[0].metadata == {"repo": "org/repo"}
        assert in_window[0].ingested_at is not None

    async def test_duplicate_batch_is_atomic(self, store, epoch, make_event):
        await store.insert_activity_events([make_event("e1", "alice")])
        with pytest.raises(DuplicateRecordError):
            await store.insert_activity_events([make_event("e2", "bob"), make_event("e1", "alice")])

        in_window = await store.get_activity_for_window(
            epoch.node_id, epoch.scope_id, epoch.period_start, epoch.period_end,
        )
        assert [e.id for e in in_window] == ["e1"]

    async def test_same_id_on_other_node_is_fine(self, store, make_event):
        await store.insert_activity_events([make_event("e1", "alice")])
        assert await store.insert_activity_events([make_event("e1", "alice", node_id="node-b")]) == 1

    async def test_empty_batch(self, store):
        assert await store.insert_activity_events([]) == 0


@pytest.mark.asyncio
class TestCuration:

    async def _seed(self, store, epoch, make_event):
        await store.insert_activity_events([
            make_event("e1", "alice"),
            make_event("e2", "bob", event_type="review_submitted"),
        ])
        return await store.insert_curation_do_nothing([
            Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="e1", user_id="user-alice"),
            Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="e2", user_id=None),
        ])

    async def test_seed_inserts_once(self, store, epoch, make_event):
        assert await self._seed(store, epoch, make_event) == 2
        again = await store.insert_curation_do_nothing([
            Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="e1", user_id="user-alice"),
        ])
        assert again == 0
        assert len(await store.get_curation_for_epoch(epoch.node_id, epoch.id)) == 2

    async def test_reseed_never_reverts_manual_exclusion(self, store, epoch, make_event):
        await self._seed(store, epoch, make_event)
        updated = await store.update_curation(
            epoch.node_id, epoch.id, "e1", included=False, note="bot account",
        )
        assert updated.included is False

        await store.insert_curation_do_nothing([
            Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="e1", user_id="user-alice", included=True),
        ])
        rows = {c.event_id: c for c in await store.get_curation_for_epoch(epoch.node_id, epoch.id)}
        assert rows["e1"].included is False
        assert rows["e1"].note == "bot account"

    async def test_curated_events_join_event_type(self, store, epoch, make_event):
        await self._seed(store, epoch, make_event)
        curated = await store.get_curated_events(epoch.node_id, epoch.id)
        assert [(c.event_id, c.event_type, c.user_id) for c in curated] == [
            ("e1", "pr_merged", "user-alice"),
            ("e2", "review_submitted", None),
        ]

    async def test_curated_events_skip_other_scopes(self, store, epoch, make_event):
        await self._seed(store, epoch, make_event)
        await store.insert_activity_events([make_event("x1", "carol", scope_id="scope-other")])
        await store.insert_curation_do_nothing([
            Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="x1", user_id="user-carol"),
        ])
        curated = await store.get_curated_events(epoch.node_id, epoch.id)
        assert [c.event_id for c in curated] == ["e1", "e2"]

    async def test_uncurated_and_backfill(self, store, epoch, make_event):
        await self._seed(store, epoch, make_event)
        await store.insert_activity_events([make_event("e3", "carol")])

        pending = await store.get_uncurated_events(epoch.node_id, epoch.id)
        assert [(p.event.id, p.has_existing_curation) for p in pending] == [
            ("e2", True), ("e3", False),
        ]

        assert await store.update_curation_user_id(epoch.node_id, epoch.id, "e2", "user-bob")
        # Already resolved rows are not overwritten
        assert not await store.update_curation_user_id(epoch.node_id, epoch.id, "e2", "user-mallory")
        pending = await store.get_uncurated_events(epoch.node_id, epoch.id)
        assert [p.event.id for p in pending] == ["e3"]

    async def test_update_missing_curation(self, store, epoch):
        with pytest.raises(CurationNotFoundError):
            await store.update_curation(epoch.node_id, epoch.id, "nope", included=False)

    async def test_closed_epoch_rejects_curation_writes(self, store, epoch, make_event):
        await self._seed(store, epoch, make_event)
        await store.close_epoch(epoch.node_id, epoch.id, 0)

        with pytest.raises(EpochClosedError):
            await store.insert_curation_do_nothing([
                Curation(node_id=epoch.node_id, epoch_id=epoch.id, event_id="e9"),
            ])
        with pytest.raises(EpochClosedError):
            await store.update_curation(epoch.node_id, epoch.id, "e1", included=False)
        with pytest.raises(EpochClosedError):
            await store.update_curation_user_id(epoch.node_id, epoch.id, "e2", "user-bob")


@pytest.mark.asyncio
class TestIdentity:

    async def test_bindings_resolve(self, store):
        inserted = await store.insert_user_bindings([
            IdentityBinding(provider="github", external_id="gh-alice", user_id="user-alice"),
            IdentityBinding(provider="github", external_id="gh-bob", user_id="user-bob"),
            IdentityBinding(provider="gitlab", external_id="gh-alice", user_id="someone-else"),
        ])
        assert inserted == 3
        resolved = await store.resolve_identities("github", ["gh-alice", "gh-alice", "gh-zed"])
        assert resolved == {"gh-alice": "user-alice"}
        assert await store.resolve_identities("github", []) == {}

    async def test_existing_binding_kept(self, store):
        await store.insert_user_bindings([IdentityBinding(provider="github", external_id="x", user_id="u1")])
        assert await store.insert_user_bindings([IdentityBinding(provider="github", external_id="x", user_id="u2")]) == 0
        assert await store.resolve_identities("github", ["x"]) == {"x": "u1"}


@pytest.mark.asyncio
class TestAllocations:

    async def test_upsert_is_idempotent(self, store, epoch):
        rows = [_alloc(epoch, "user-1", 8000), _alloc(epoch, "user-2", 2000)]
        await store.insert_allocations(rows)
        first = await store.get_allocations_for_epoch(epoch.node_id, epoch.id)
        await store.insert_allocations(rows)
        second = await store.get_allocations_for_epoch(epoch.node_id, epoch.id)
        assert first == second
        assert [(a.user_id, a.proposed_units) for a in second] == [("user-1", 8000), ("user-2", 2000)]

    async def test_upsert_updates_units_keeps_id(self, store, epoch):
        await store.insert_allocations([_alloc(epoch, "user-1", 10)])
        (before,) = await store.get_allocations_for_epoch(epoch.node_id, epoch.id)
        await store.insert_allocations([_alloc(epoch, "user-1", 25, count=3)])
        (after,) = await store.get_allocations_for_epoch(epoch.node_id, epoch.id)
        assert after.id == before.id
        assert (after.proposed_units, after.activity_count) == (25, 3)

    async def test_delete_stale(self, store, epoch):
        await store.insert_allocations([_alloc(epoch, "a", 1), _alloc(epoch, "b", 2)])
        assert await store.delete_stale_allocations(epoch.node_id, epoch.id, ["b"]) == 1
        assert [a.user_id for a in await store.get_allocations_for_epoch(epoch.node_id, epoch.id)] == ["b"]
        assert await store.delete_stale_allocations(epoch.node_id, epoch.id, []) == 1

    async def test_closed_epoch_rejects_allocation_writes(self, store, epoch):
        await store.close_epoch(epoch.node_id, epoch.id, 0)
        with pytest.raises(EpochClosedError):
            await store.insert_allocations([_alloc(epoch, "a", 1)])


@pytest.mark.asyncio
class TestPoolAndStatements:

    async def test_component_unique_per_epoch(self, store, epoch):
        stored = await store.insert_pool_component(_component(epoch, "base_issuance", 100))
        assert stored.id
        with pytest.raises(DuplicateRecordError):
            await store.insert_pool_component(_component(epoch, "base_issuance", 100))
        components = await store.get_pool_components_for_epoch(epoch.node_id, epoch.id)
        assert [(c.component_id, c.amount_credits, c.inputs_json) for c in components] == [
            ("base_issuance", 100, {"amount": "100"}),
        ]

    async def test_no_components_after_close(self, store, epoch):
        await store.close_epoch(epoch.node_id, epoch.id, 0)
        with pytest.raises(EpochClosedError):
            await store.insert_pool_component(_component(epoch, "late", 5))

    async def test_statement_written_once(self, store, epoch):
        statement = PayoutStatement(
            node_id=epoch.node_id, epoch_id=epoch.id, allocation_set_hash="abc",
            pool_total_credits=10,
            payouts=[PayoutLine(user_id="u", total_units=1, share="1.000000", amount_credits=10)],
        )
        stored = await store.insert_payout_statement(statement)
        assert stored.id and stored.created_at is not None
        with pytest.raises(DuplicateRecordError):
            await store.insert_payout_statement(statement)

        fetched = await store.get_statement_for_epoch(epoch.node_id, epoch.id)
        assert fetched.payouts == statement.payouts
        assert fetched.pool_total_credits == 10
        assert await store.get_statement_for_epoch("node-b", epoch.id) is None


@pytest.mark.asyncio
class TestCursors:

    async def test_upsert_and_get(self, store):
        key = ("node-a", "scope-main", "github", "pull_requests", "org/repo")
        assert await store.get_cursor(*key) is None
        await store.upsert_cursor(SourceCursor(
            node_id=key[0], scope_id=key[1], source=key[2], stream=key[3],
            source_ref=key[4], cursor_value="2025-01-06T00:00:00Z",
        ))
        await store.upsert_cursor(SourceCursor(
            node_id=key[0], scope_id=key[1], source=key[2], stream=key[3],
            source_ref=key[4], cursor_value="2025-01-07T00:00:00Z",
        ))
        cursor = await store.get_cursor(*key)
        assert cursor.cursor_value == "2025-01-07T00:00:00Z"
        assert cursor.retrieved_at is not None
