"""Scheduled epoch close.

Runs the tail of the pipeline for one (node, scope): curate, recompute
allocations, optionally fund base issuance, close and publish, optionally
sign, and optionally open the next window. Safe to re-run after a
successful close: the stored statement is returned instead of failing.
"""

import argparse
import asyncio
import sys

import bittensor as bt

from epochledger.database.engine import create_engine, init_schema
from epochledger.entrypoints.common import add_common_args, load_environment, load_settings
from epochledger.ledger.errors import LedgerError
from epochledger.ledger.pipeline import EpochLedger
from epochledger.ledger.pool import BASE_ISSUANCE, base_issuance_component, missing_components
from epochledger.ledger.store.sql import SqlLedgerStore


async def run_close(settings, args) -> int:
    engine = create_engine(settings.database)
    try:
        if settings.database.create_schema:
            await init_schema(engine)
        store = SqlLedgerStore(engine)
        ledger = EpochLedger(store, settings.node.node_id, settings.node.scope_id)

        epoch_id = getattr(args, "close.epoch_id", None)
        if epoch_id is None:
            epoch = await store.get_open_epoch(settings.node.node_id, settings.node.scope_id)
            if epoch is None:
                bt.logging.warning({"ledger_close": {"status": "no_open_epoch"}})
                return 0
        else:
            epoch = await store.get_epoch(settings.node.node_id, epoch_id)
            if epoch is None:
                bt.logging.error({"ledger_close": {"status": "not_found", "epoch_id": epoch_id}})
                return 1

        if epoch.is_open:
            await ledger.curate_and_resolve(epoch.id)
            await ledger.recompute_allocations(epoch.id)
            if getattr(args, "close.fund_base_issuance", False):
                components = await store.get_pool_components_for_epoch(epoch.node_id, epoch.id)
                if BASE_ISSUANCE in missing_components(components):
                    base = base_issuance_component(epoch, settings.credits_per_epoch)
                    await ledger.add_pool_component(
                        epoch.id,
                        base.component_id,
                        base.amount_credits,
                        base.algorithm_version,
                        inputs=base.inputs_json,
                    )

        statement = await ledger.close_epoch_idempotent(
            epoch.id, getattr(args, "close.pool_total", None),
        )

        if settings.signing.enabled:
            signatures = await store.get_signatures_for_statement(epoch.node_id, statement.id)
            wallet = bt.Wallet(
                name=settings.signing.wallet_name,
                hotkey=settings.signing.wallet_hotkey,
                **({"path": settings.signing.wallet_path} if settings.signing.wallet_path else {}),
            )
            if wallet.hotkey.ss58_address not in {s.signer_hotkey for s in signatures}:
                await ledger.sign_statement(epoch.id, wallet, settings.signing.context())

        if getattr(args, "close.open_next", False):
            length = epoch.period_end - epoch.period_start
            await ledger.ensure_epoch_for_window(
                epoch.period_end, epoch.period_end + length, settings.weights,
            )
        return 0
    finally:
        await engine.dispose()


def main() -> None:
    load_environment()

    parser = argparse.ArgumentParser(description="Close an epoch and publish its payout statement")
    add_common_args(parser)
    parser.add_argument("--close.epoch_id", type=int, required=False)
    parser.add_argument("--close.pool_total", type=int, required=False)
    parser.add_argument("--close.fund_base_issuance", action="store_true")
    parser.add_argument("--close.open_next", action="store_true")
    args = parser.parse_args()
    settings = load_settings(args)

    try:
        code = asyncio.run(run_close(settings, args))
    except LedgerError as e:
        bt.logging.error({"ledger_close": {"status": "failed", "error_type": type(e).__name__, "error": str(e)}})
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
