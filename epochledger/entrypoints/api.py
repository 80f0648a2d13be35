"""Public ledger API entrypoint.

Serves closed epochs, allocations and payout statements for one node
over HTTP until SIGINT / SIGTERM.
"""

import argparse
import asyncio
import signal

import bittensor as bt

from epochledger.database.engine import create_engine, init_schema
from epochledger.entrypoints.common import add_common_args, load_environment, load_settings
from epochledger.ledger.store.http_server import LedgerHTTPServer
from epochledger.ledger.store.sql import SqlLedgerStore


async def serve(settings, stop: asyncio.Event) -> None:
    engine = create_engine(settings.database)
    if settings.database.create_schema:
        await init_schema(engine)
    server = LedgerHTTPServer(
        store=SqlLedgerStore(engine),
        node_id=settings.node.node_id,
        host=settings.api.host,
        port=settings.api.port,
        default_page_size=settings.api.default_page_size,
        max_page_size=settings.api.max_page_size,
    )
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()
        await engine.dispose()


def main() -> None:
    load_environment()
    bt.logging.info({"ledger_api": "starting"})

    parser = argparse.ArgumentParser(description="Epoch ledger public API")
    add_common_args(parser)
    parser.add_argument("--api.host", type=str, required=False)
    parser.add_argument("--api.port", type=int, required=False)
    args = parser.parse_args()
    settings = load_settings(args)

    bt.logging.info({
        "ledger_api_config": {
            "node_id": settings.node.node_id,
            "host": settings.api.host,
            "port": settings.api.port,
        }
    })

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def _signal_handler(sig, frame):
        bt.logging.info({"ledger_api": "shutdown_signal_received"})
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        loop.run_until_complete(serve(settings, stop))
    except KeyboardInterrupt:
        bt.logging.info({"ledger_api": "keyboard_interrupt"})
    finally:
        loop.close()
        bt.logging.info({"ledger_api": "stopped"})


if __name__ == "__main__":
    main()
