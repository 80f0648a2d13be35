"""Payout statement signing and verification using bittensor keypairs.

The node operator signs each published statement with its hotkey. Anyone
holding the hotkey's ss58 address can verify the signature without
trusting the server that returned the statement.

The signed message is bound to an application domain, a format version and
the node id, so a signature cannot be replayed against another ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .hashing import payouts_hash
from .models import StatementSignature

if TYPE_CHECKING:
    from .models import PayoutStatement


@dataclass(frozen=True)
class SigningContext:
    """Domain separation for statement signatures."""

    app_domain: str = "epochledger"
    format_version: str = "v0"


def build_statement_message(
    statement: PayoutStatement,
    context: SigningContext,
) -> str:
    """Canonical text that gets signed. One field per line."""
    return "\n".join([
        f"{context.app_domain}:{context.format_version}:{statement.node_id}",
        f"epoch:{statement.epoch_id}",
        f"pool:{statement.pool_total_credits}",
        f"allocations:{statement.allocation_set_hash}",
        f"payouts:{payouts_hash(statement.payouts)}",
    ])


def sign_statement(
    statement: PayoutStatement,
    wallet: Any,
    context: SigningContext | None = None,
) -> StatementSignature:
    """Sign a stored statement with the wallet's hotkey.

    Args:
        statement: A persisted statement (must carry its id).
        wallet: Bittensor wallet with hotkey access.
        context: Domain separation; defaults to SigningContext().

    Returns:
        StatementSignature ready for insert_statement_signature.
    """
    if not statement.id:
        raise ValueError("statement must be persisted before signing")
    message = build_statement_message(statement, context or SigningContext())
    signature = wallet.hotkey.sign(message.encode())
    return StatementSignature(
        node_id=statement.node_id,
        statement_id=statement.id,
        signer_hotkey=wallet.hotkey.ss58_address,
        signature=signature.hex() if isinstance(signature, bytes) else str(signature),
        signed_at=datetime.now(timezone.utc),
    )


def verify_statement_signature(
    statement: PayoutStatement,
    signature: StatementSignature,
    context: SigningContext | None = None,
) -> bool:
    """Verify a statement signature against the signer's hotkey.

    Returns:
        True if the signature is valid for this exact statement content.
    """
    import bittensor as bt

    if not signature.signature or signature.statement_id != statement.id:
        return False

    message = build_statement_message(statement, context or SigningContext())
    sig_hex = signature.signature
    if sig_hex.startswith("0x"):
        sig_hex = sig_hex[2:]
    try:
        sig_bytes = bytes.fromhex(sig_hex)
    except ValueError:
        return False

    try:
        keypair = bt.Keypair(ss58_address=signature.signer_hotkey)
        return keypair.verify(message.encode(), sig_bytes)
    except Exception:
        return False


__all__ = [
    "SigningContext",
    "build_statement_message",
    "sign_statement",
    "verify_statement_signature",
]
