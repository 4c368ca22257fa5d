#!/usr/bin/env python3
"""Command-line interface for fee reconciliation.

Usage:
    python -m fee_reconciliation.cli upload statement.csv
    python -m fee_reconciliation.cli match-all
    python -m fee_reconciliation.cli retry-failed
    python -m fee_reconciliation.cli stats
    python -m fee_reconciliation.cli unmatched
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from .config import get_settings
from .database import DatabaseManager
from .services import ReconciliationService

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_command_async(command: str, file_path: Optional[str] = None, database_url: Optional[str] = None) -> int:
    """Run one CLI command against the ledger.

    Args:
        command: One of upload, match-all, retry-failed, stats, unmatched.
        file_path: Statement path for the upload command.
        database_url: Database URL; defaults to the DATABASE_URL setting.

    Returns:
        Exit code (0 for success, 1 for a failed upload, 2 for bad input).
    """
    if command == "upload" and (not file_path or not os.path.isfile(file_path)):
        logger.error(f"Statement file not found: {file_path}")
        return 2

    db_manager = DatabaseManager(database_url=database_url or get_settings().database_url)
    await db_manager.initialize()

    try:
        async with db_manager.session() as session:
            service = ReconciliationService(session)

            if command == "upload":
                with open(file_path, "rb") as f:
                    data = f.read()
                result = await service.ingest_statement(data, os.path.basename(file_path))
                print(json.dumps(result.model_dump(), indent=2))
                return 1 if result.status == "failed" else 0

            if command == "match-all":
                matched = await service.match_all()
                print(json.dumps({"matched": matched}))
                return 0

            if command == "retry-failed":
                retried = await service.retry_failed()
                print(json.dumps({"retried": retried}))
                return 0

            if command == "stats":
                stats = await service.stats()
                print(json.dumps(stats.model_dump(), indent=2))
                return 0

            if command == "unmatched":
                transactions = await service.get_unmatched()
                print(json.dumps([t.to_dict() for t in transactions], indent=2))
                return 0

        logger.error(f"Unknown command: {command}")
        return 2
    finally:
        await db_manager.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="fee-reconcile",
        description="Reconcile bank statements and notifications against fee payers.",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL or a local SQLite file)",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    upload_parser = subparsers.add_parser("upload", help="Parse, store and match a statement file")
    upload_parser.add_argument("file", help="Path to a .csv, .md or .pdf statement")

    subparsers.add_parser("match-all", help="Match every unmatched transaction")
    subparsers.add_parser("retry-failed", help="Reprocess failed notifications")
    subparsers.add_parser("stats", help="Show notification statistics")
    subparsers.add_parser("unmatched", help="List unmatched transactions")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    configure_logging(parsed_args.log_level)
    return asyncio.run(run_command_async(
        command=parsed_args.command,
        file_path=getattr(parsed_args, "file", None),
        database_url=parsed_args.database_url,
    ))


if __name__ == "__main__":
    sys.exit(main())
