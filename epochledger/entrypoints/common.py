"""Shared CLI plumbing for the ledger entrypoints."""

from __future__ import annotations

import argparse
import os

import bittensor as bt
from dotenv import load_dotenv

from epochledger.config import LedgerSettings


def load_environment() -> None:
    # Load .env if not in test mode
    if os.environ.get("EPOCHLEDGER_TEST_MODE") != "true":
        load_dotenv()


def add_common_args(parser: argparse.ArgumentParser) -> None:
    bt.logging.add_args(parser)
    parser.add_argument("--database.url", type=str, required=False)
    parser.add_argument("--node.node_id", type=str, required=False)
    parser.add_argument("--node.scope_id", type=str, required=False)


def load_settings(args: argparse.Namespace) -> LedgerSettings:
    """Environment / .env settings with any CLI flags applied on top."""
    settings = LedgerSettings()
    overrides = {
        "database": {"url": getattr(args, "database.url", None)},
        "node": {
            "node_id": getattr(args, "node.node_id", None),
            "scope_id": getattr(args, "node.scope_id", None),
        },
        "api": {
            "host": getattr(args, "api.host", None),
            "port": getattr(args, "api.port", None),
        },
    }
    for section, values in overrides.items():
        values = {k: v for k, v in values.items() if v is not None}
        if values:
            current = getattr(settings, section)
            settings = settings.model_copy(
                update={section: current.model_copy(update=values)}
            )
    return settings


__all__ = ["add_common_args", "load_environment", "load_settings"]
