"""DAO event indexer entry point.

Backfills from the checkpoint (or START_BLOCK, or the current height) to the
chain head, then follows new blocks through live subscriptions and a periodic
catch-up poll until interrupted.

Usage:
    # Run with settings from .env
    python scripts/run_indexer.py

    # Override endpoint / factory / start block
    python scripts/run_indexer.py --rpc-url http://localhost:8545 \
        --factory 0x5FbDB2315678afecb367f032d93F642f64180aa3 --start-block 0

    # Backfill to the current head and exit
    python scripts/run_indexer.py --once

    # Health check only
    python scripts/run_indexer.py --health-check

Example:
    $ python scripts/run_indexer.py --once
    [INFO] Chain height 1520, backfill starts at block 0
    [INFO] Backfilling blocks 0..1520
    [INFO] Indexed DAO Builders (0xa513...), 3 new watches
    [INFO] Backfill 0..1520 done: 14 events, 14 applied, 0 undecodable
"""

import argparse
import signal
import sys
import threading

from src.indexer.service import IndexerService
from src.shared.config import Config
from src.shared.exceptions import StartupError
from src.shared.utils import setup_logger


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Index DAO factory, governance, membership and treasury events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--rpc-url",
        type=str,
        help="JSON-RPC endpoint. Default: RPC_URL from the environment",
        metavar="URL",
    )

    parser.add_argument(
        "--factory",
        type=str,
        help="DAO factory address. Default: FACTORY_ADDRESS from the environment",
        metavar="ADDRESS",
    )

    parser.add_argument(
        "--start-block",
        type=int,
        help="First block to index when no checkpoint exists",
        metavar="N",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Backfill to the current height and exit",
    )

    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Run health check only and exit",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args()


def main() -> int:
    """Run the indexer."""
    args = parse_args()

    logger = setup_logger(
        "run_indexer",
        level="DEBUG" if args.verbose else "INFO",
    )

    if args.rpc_url:
        Config.RPC_URL = args.rpc_url
    if args.factory:
        Config.FACTORY_ADDRESS = args.factory
    if args.start_block is not None:
        Config.START_BLOCK = args.start_block

    log_file = Config.LOGS_DIR / "indexer" / "indexer.log"
    service = IndexerService(Config, log_file=log_file)

    try:
        if args.health_check:
            if not service.health_check():
                logger.error("Chain endpoint health check failed: %s", Config.RPC_URL)
                return 1
            logger.info("Health check: PASSED")
            return 0

        if args.once:
            result = service.run_once()
            logger.info(
                "✓ Backfill complete: blocks %d..%d, %d events applied",
                result.from_block,
                result.to_block,
                result.applied,
            )
            return 0

        stop_requested = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

        service.start()
        logger.info("Indexer running, press Ctrl+C to stop")
        while not stop_requested.wait(1.0):
            pass
        service.stop()
        return 0

    except StartupError as e:
        logger.error("Indexer failed to start: %s", e)
        return 1

    except KeyboardInterrupt:
        logger.warning("Indexer interrupted by user")
        service.stop()
        return 130

    except Exception as e:
        logger.exception("Unexpected error in indexer: %s", e)
        service.stop()
        return 1


if __name__ == "__main__":
    sys.exit(main())
