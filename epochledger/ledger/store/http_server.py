"""Public read-only HTTP API over closed epochs.

Routes (GET only, scoped to the server's node id):
  /ledger/epochs?limit=N&offset=M          - closed epochs, newest first
  /ledger/epochs/{epoch_id}/allocations    - allocations of a closed epoch
  /ledger/epochs/{epoch_id}/statement      - payout statement of a closed epoch

Open epochs, unknown ids and other nodes' epochs are all 404 so the API
never reveals that an epoch exists before it is final. Every credit or
unit amount is a decimal string.
"""

from __future__ import annotations

import re

import bittensor as bt
from aiohttp import web

from epochledger.ledger.errors import (
    ConflictError,
    EpochNotFoundError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
)
from epochledger.ledger.models import (
    Epoch,
    EpochAllocationsPayload,
    EpochListPage,
    EpochStatementPayload,
    PublicAllocation,
    PublicEpoch,
    PublicStatement,
)
from epochledger.ledger.store.interface import LedgerStore

_EPOCH_ID_RE = re.compile(r"^[0-9]+$")
_MAX_EPOCH_ID = 2**63 - 1


def _parse_epoch_id(raw: str) -> int:
    if not _EPOCH_ID_RE.match(raw):
        raise LedgerValidationError(f"invalid epoch id: {raw!r}")
    epoch_id = int(raw)
    if epoch_id > _MAX_EPOCH_ID:
        raise EpochNotFoundError(epoch_id)
    return epoch_id


def _parse_non_negative(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    if not raw.isascii() or not raw.isdigit():
        raise LedgerValidationError(f"{name} must be a non-negative integer, got {raw!r}")
    return int(raw)


@web.middleware
async def _error_middleware(request: web.Request, handler):
    endpoint = request.path
    try:
        return await handler(request)
    except LedgerValidationError as e:
        bt.logging.warning({"ledger_request": {"endpoint": endpoint, "status": 400, "error": str(e)}})
        return web.json_response({"error": "bad_request", "detail": str(e)}, status=400)
    except NotFoundError as e:
        bt.logging.debug({"ledger_request": {"endpoint": endpoint, "status": 404, "error": str(e)}})
        return web.json_response({"error": "not_found"}, status=404)
    except ConflictError as e:
        bt.logging.warning({"ledger_request": {"endpoint": endpoint, "status": 409, "error": str(e)}})
        return web.json_response({"error": "conflict", "detail": str(e)}, status=409)
    except LedgerError as e:
        bt.logging.error({"ledger_request": {"endpoint": endpoint, "status": 500, "error": str(e)}})
        return web.json_response({"error": "internal"}, status=500)


class LedgerHTTPServer:
    """Lightweight async HTTP server for public ledger reads."""

    def __init__(
        self,
        store: LedgerStore,
        node_id: str,
        host: str = "0.0.0.0",
        port: int = 8200,
        default_page_size: int = 50,
        max_page_size: int = 200,
    ):
        self.store = store
        self.node_id = node_id
        self.host = host
        self.port = port
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[_error_middleware])
        app.router.add_get("/ledger/epochs", self._handle_list_epochs)
        app.router.add_get("/ledger/epochs/{epoch_id}/allocations", self._handle_allocations)
        app.router.add_get("/ledger/epochs/{epoch_id}/statement", self._handle_statement)
        return app

    async def start(self) -> None:
        """Start the HTTP server. With port=0 the bound port is written back to self.port."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        if self.port == 0 and self._runner.addresses:
            self.port = self._runner.addresses[0][1]
        bt.logging.info({"ledger_http": {"status": "started", "port": self.port, "node_id": self.node_id}})

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            bt.logging.info({"ledger_http": "stopped"})

    async def _closed_epoch(self, raw_id: str) -> Epoch:
        epoch_id = _parse_epoch_id(raw_id)
        epoch = await self.store.get_epoch(self.node_id, epoch_id)
        if epoch is None or epoch.is_open:
            raise EpochNotFoundError(epoch_id)
        return epoch

    # -- routes --

    async def _handle_list_epochs(self, request: web.Request) -> web.Response:
        limit = _parse_non_negative(request, "limit", self.default_page_size)
        offset = _parse_non_negative(request, "offset", 0)
        if not 1 <= limit <= self.max_page_size:
            raise LedgerValidationError(f"limit must be between 1 and {self.max_page_size}")

        epochs = await self.store.list_closed_epochs(self.node_id, limit, offset)
        total = await self.store.count_closed_epochs(self.node_id)
        page = EpochListPage(
            epochs=[PublicEpoch.from_epoch(e) for e in epochs],
            total=total,
            limit=limit,
            offset=offset,
        )
        bt.logging.debug({"ledger_request": {"endpoint": "epochs", "status": 200, "count": len(epochs)}})
        return web.json_response(page.model_dump(mode="json", by_alias=True))

    async def _handle_allocations(self, request: web.Request) -> web.Response:
        epoch = await self._closed_epoch(request.match_info["epoch_id"])
        allocations = await self.store.get_allocations_for_epoch(self.node_id, epoch.id)
        payload = EpochAllocationsPayload(
            epoch_id=str(epoch.id),
            allocations=[PublicAllocation.from_allocation(a) for a in allocations],
        )
        bt.logging.debug({"ledger_request": {"endpoint": "allocations", "status": 200, "epoch_id": epoch.id}})
        return web.json_response(payload.model_dump(mode="json", by_alias=True))

    async def _handle_statement(self, request: web.Request) -> web.Response:
        epoch = await self._closed_epoch(request.match_info["epoch_id"])
        statement = await self.store.get_statement_for_epoch(self.node_id, epoch.id)
        if statement is None:
            # Closing writes the statement in the same transaction
            bt.logging.error({
                "ledger_integrity": {"epoch_id": epoch.id, "problem": "closed_without_statement"}
            })
            payload = EpochStatementPayload(epoch_id=str(epoch.id), statement=None)
        else:
            signatures = await self.store.get_signatures_for_statement(self.node_id, statement.id)
            payload = EpochStatementPayload(
                epoch_id=str(epoch.id),
                statement=PublicStatement.from_statement(statement, signatures),
            )
        bt.logging.debug({"ledger_request": {"endpoint": "statement", "status": 200, "epoch_id": epoch.id}})
        return web.json_response(payload.model_dump(mode="json", by_alias=True))


__all__ = ["LedgerHTTPServer"]
