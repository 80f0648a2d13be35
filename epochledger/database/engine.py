"""Async engine construction and schema bootstrap."""

from __future__ import annotations

from typing import TYPE_CHECKING

import bittensor as bt
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .schema import Base

if TYPE_CHECKING:
    from epochledger.config import DatabaseSettings


def create_engine(settings: DatabaseSettings) -> AsyncEngine:
    # Never log credentials
    bt.logging.debug({"ledger_db": {"url": settings.url.split("@")[-1]}})
    return create_async_engine(settings.url, echo=settings.echo)


async def init_schema(engine: AsyncEngine) -> None:
    """Create missing ledger tables. Existing tables are left as they are."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = ["create_engine", "init_schema"]
