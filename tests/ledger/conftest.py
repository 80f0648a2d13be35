"""Shared fixtures: a fresh SQLite ledger database per test."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from epochledger.config import DatabaseSettings
from epochledger.database.engine import create_engine, init_schema
from epochledger.ledger.models import ActivityEvent, WeightConfig
from epochledger.ledger.store.sql import SqlLedgerStore

NODE = "node-a"
SCOPE = "scope-main"
PERIOD_START = datetime(2025, 1, 6, tzinfo=timezone.utc)
PERIOD_END = PERIOD_START + timedelta(days=7)


@pytest.fixture
def weights() -> WeightConfig:
    return WeightConfig.parse({"pr_merged": 8, "review_submitted": 3, "issue_closed": 2})


@pytest.fixture
def make_event():
    """Factory for in-window activity events on the default node/scope."""

    def _make(
        event_id: str,
        login: str,
        event_type: str = "pr_merged",
        event_time: datetime | None = None,
        node_id: str = NODE,
        scope_id: str = SCOPE,
    ) -> ActivityEvent:
        ts = event_time or PERIOD_START + timedelta(hours=1)
        return ActivityEvent(
            id=event_id,
            node_id=node_id,
            scope_id=scope_id,
            source="github",
            event_type=event_type,
            platform_user_id=f"gh-{login}",
            platform_login=login,
            artifact_url=f"https://github.com/org/repo/pull/{event_id}",
            metadata={"repo": "org/repo"},
            payload_hash=f"sha256:{event_id}",
            producer="github-adapter",
            producer_version="0.3.1",
            event_time=ts,
            retrieved_at=ts + timedelta(minutes=5),
        )

    return _make


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"))
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(engine):
    return SqlLedgerStore(engine)


@pytest.fixture
async def epoch(store, weights):
    """An open week-long epoch on node-a / scope-main."""
    return await store.create_epoch(NODE, SCOPE, PERIOD_START, PERIOD_END, weights)
