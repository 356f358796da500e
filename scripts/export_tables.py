"""Export derived-store tables to CSV.

Usage:
    # Export every table to data/exports/
    python scripts/export_tables.py

    # Selected tables to a custom directory
    python scripts/export_tables.py --table proposals --table votes --output-dir /tmp/dao
"""

import argparse
import sys
from pathlib import Path

from src.shared.config import Config
from src.shared.db import ALLOWED_TABLES, export_to_csv
from src.shared.utils import setup_logger


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Export indexed DAO data to CSV files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--table",
        action="append",
        choices=sorted(ALLOWED_TABLES),
        help="Table to export (repeatable). Default: all tables",
    )

    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Config.DATA_DIR / "exports",
        help="Directory for the CSV files (default: data/exports)",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args()


def main() -> int:
    """Export the requested tables."""
    args = parse_args()

    logger = setup_logger(
        "export_tables",
        level="DEBUG" if args.verbose else "INFO",
    )

    tables = args.table or sorted(ALLOWED_TABLES)
    try:
        for table in tables:
            path = args.output_dir / f"{table}.csv"
            rows = export_to_csv(table, path)
            logger.info("  ✓ Exported %s: %d rows → %s", table, rows, path)
        return 0

    except Exception as e:
        logger.exception("Export failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
