"""HTTP client for the public ledger read API.

Used by auditors to fetch closed epochs, their allocations and payout
statements from a node, then re-verify the statements locally.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import bittensor as bt
import httpx

from epochledger.ledger.errors import LedgerValidationError
from epochledger.ledger.models import (
    EpochAllocationsPayload,
    EpochListPage,
    EpochStatementPayload,
    PublicEpoch,
)
from epochledger.ledger.verifier import StatementVerifier, VerificationResult


class LedgerReadClient:
    """Read-only client for one node's public ledger API."""

    def __init__(
        self,
        base_url: str,
        node_id: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.node_id = node_id
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> LedgerReadClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _get(self, path: str, params: dict[str, int] | None = None) -> httpx.Response:
        """GET with retry on transport errors."""
        for attempt in range(self._max_retries):
            try:
                resp = await self._client.get(f"{self.base_url}{path}", params=params)
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise
                wait = 2 ** attempt
                bt.logging.warning({"ledger_http_client": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
                continue
            if resp.status_code == 400:
                raise LedgerValidationError(resp.json().get("detail", resp.text))
            return resp
        raise ConnectionError("Max retries exceeded")

    # -- routes --

    async def list_epochs(self, limit: int = 50, offset: int = 0) -> EpochListPage:
        resp = await self._get("/ledger/epochs", params={"limit": limit, "offset": offset})
        resp.raise_for_status()
        return EpochListPage.model_validate(resp.json())

    async def iter_closed_epochs(self, page_size: int = 50) -> AsyncIterator[PublicEpoch]:
        offset = 0
        while True:
            page = await self.list_epochs(limit=page_size, offset=offset)
            for epoch in page.epochs:
                yield epoch
            offset += len(page.epochs)
            if not page.epochs or offset >= page.total:
                return

    async def get_allocations(self, epoch_id: int) -> EpochAllocationsPayload | None:
        resp = await self._get(f"/ledger/epochs/{epoch_id}/allocations")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return EpochAllocationsPayload.model_validate(resp.json())

    async def get_statement(self, epoch_id: int) -> EpochStatementPayload | None:
        resp = await self._get(f"/ledger/epochs/{epoch_id}/statement")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return EpochStatementPayload.model_validate(resp.json())

    # -- audit --

    async def audit_epoch(
        self, epoch_id: int, verifier: StatementVerifier | None = None,
    ) -> VerificationResult:
        """Fetch an epoch's allocations and statement and verify one against the other."""
        verifier = verifier or StatementVerifier()
        allocations = await self.get_allocations(epoch_id)
        statement = await self.get_statement(epoch_id)
        if allocations is None or statement is None:
            return VerificationResult(valid=False, errors=[f"epoch {epoch_id} not published"])
        if statement.statement is None:
            return VerificationResult(valid=False, errors=[f"epoch {epoch_id} has no statement"])

        published = statement.statement
        return verifier.verify(
            [a.to_allocation(self.node_id, epoch_id) for a in allocations.allocations],
            published.to_statement(self.node_id, epoch_id),
            published.to_signatures(self.node_id),
        )


__all__ = ["LedgerReadClient"]
