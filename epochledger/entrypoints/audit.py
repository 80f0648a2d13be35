"""Statement auditor entrypoint.

Fetches every closed epoch a node publishes and re-verifies each payout
statement from its published allocations. Needs no database access.
Exits non-zero if any statement fails verification.
"""

import argparse
import asyncio
import os
import sys

import bittensor as bt

from epochledger.entrypoints.common import load_environment
from epochledger.ledger.signer import SigningContext
from epochledger.ledger.store.http_client import LedgerReadClient
from epochledger.ledger.verifier import StatementVerifier


async def run_audit(url: str, node_id: str, verifier: StatementVerifier) -> int:
    failures = 0
    audited = 0
    async with LedgerReadClient(url, node_id) as client:
        async for epoch in client.iter_closed_epochs():
            result = await client.audit_epoch(int(epoch.id), verifier)
            audited += 1
            if result.valid:
                bt.logging.info({"ledger_audit": {"epoch_id": epoch.id, "valid": True}})
            else:
                failures += 1
                bt.logging.error({
                    "ledger_audit": {"epoch_id": epoch.id, "valid": False, "errors": result.errors}
                })
    bt.logging.info({"ledger_audit_summary": {"audited": audited, "failed": failures}})
    return 1 if failures else 0


def main() -> None:
    load_environment()

    parser = argparse.ArgumentParser(description="Verify published payout statements")
    bt.logging.add_args(parser)
    parser.add_argument("--audit.url", type=str, required=False)
    parser.add_argument("--node.node_id", type=str, required=False)
    parser.add_argument("--audit.signer_hotkey", type=str, required=False)
    parser.add_argument("--audit.app_domain", type=str, default="epochledger")
    parser.add_argument("--audit.format_version", type=str, default="v0")
    args = parser.parse_args()

    # Env takes precedence over CLI
    url = os.environ.get("EPOCHLEDGER_AUDIT__URL", getattr(args, "audit.url", None) or "")
    node_id = os.environ.get("EPOCHLEDGER_NODE__NODE_ID", getattr(args, "node.node_id", None) or "")
    signer_hotkey = os.environ.get(
        "EPOCHLEDGER_AUDIT__SIGNER_HOTKEY", getattr(args, "audit.signer_hotkey", None),
    )

    if not url:
        bt.logging.error("EPOCHLEDGER_AUDIT__URL is required")
        sys.exit(1)
    if not node_id:
        bt.logging.error("EPOCHLEDGER_NODE__NODE_ID is required")
        sys.exit(1)

    verifier = StatementVerifier(
        signer_hotkey=signer_hotkey or None,
        context=SigningContext(
            app_domain=getattr(args, "audit.app_domain"),
            format_version=getattr(args, "audit.format_version"),
        ),
    )
    bt.logging.info({"ledger_audit_config": {"url": url, "node_id": node_id, "signer": signer_hotkey}})
    sys.exit(asyncio.run(run_audit(url, node_id, verifier)))


if __name__ == "__main__":
    main()
