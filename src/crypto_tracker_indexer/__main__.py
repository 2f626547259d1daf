"""Command-line entry point: ``crypto-tracker-indexer`` / ``python -m crypto_tracker_indexer``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from crypto_tracker_indexer import __version__
from crypto_tracker_indexer.config import Settings, get_settings
from crypto_tracker_indexer.service import IndexerService
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.telemetry import init_telemetry

logger = logging.getLogger("crypto_tracker_indexer")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="crypto-tracker-indexer",
        description="Tail EVM chains and record transfers touching watched wallets.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync cycle per chain and exit.",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create missing tables before starting (local databases; use Alembic in production).",
    )
    return parser.parse_args(argv)


async def _run(settings: Settings, *, once: bool, init_schema: bool) -> int:
    if init_schema:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    service = IndexerService(settings)
    if once:
        results = await service.run_once()
        return 0 if all(r is not None for r in results.values()) else 1

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        if task is not None:
            loop.add_signal_handler(sig, task.cancel)

    await service.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration:\n%s", e)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Configuration: %s", settings.redacted_summary())

    telemetry = init_telemetry(settings)
    try:
        return asyncio.run(_run(settings, once=args.once, init_schema=args.init_schema))
    except KeyboardInterrupt:
        return 130
    finally:
        if telemetry is not None:
            telemetry.shutdown()


if __name__ == "__main__":
    sys.exit(main())
