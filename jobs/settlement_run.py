"""
============================================================================
Loyalty Settlement Core v1.0.0
Settlement Operator Job
============================================================================

Reliability Level: L6 Critical (Cold Path)
Input Constraints: DATABASE_URL or DB_* for the SQL store; brokerage config
Side Effects: Brokerage journals, store writes

COMMANDS:
    journal    Fund members' brokerage sub-accounts (--all or --member)
    recover    Resolve queued journals left behind by a crash
    profile    Data-quality profile of the wallet or orders table
    refresh    Recompute wallet points/cash from the ledger

Exit code is 0 when the command completed with no skipped items, 2 when it
completed with skipped items, 1 on failure.

============================================================================
"""

import argparse
import json
import logging
import sys
import uuid
from typing import List, Optional

from dotenv import load_dotenv

from services.settlement_errors import SettlementError
from services.settlement_models import dumps
from services.settlement_runtime import build_settlement_services

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Settlement pipeline operator commands"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    journal = sub.add_parser("journal", help="Run the journal engine")
    scope = journal.add_mutually_exclusive_group(required=True)
    scope.add_argument("--all", action="store_true", help="Fund every member")
    scope.add_argument(
        "--member",
        action="append",
        dest="members",
        help="Member id to fund (repeatable)"
    )

    sub.add_parser("recover", help="Recover stale queued journals")

    profile = sub.add_parser("profile", help="Run the data-quality profile")
    profile.add_argument(
        "--table",
        choices=["wallet", "orders"],
        default="wallet",
        help="Table to profile (default: wallet)"
    )

    sub.add_parser("refresh", help="Recompute wallet balances from the ledger")
    return parser


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    correlation_id = str(uuid.uuid4())
    try:
        services = build_settlement_services()
        if args.command == "journal":
            member_ids = None if args.all else args.members
            result = services.journal.run_journal(member_ids, correlation_id=correlation_id)
            print(dumps(result.to_dict()))
            return EXIT_PARTIAL if result.issues else EXIT_OK

        if args.command == "recover":
            result = services.journal.recover_queued_journals(correlation_id=correlation_id)
            print(dumps(result.to_dict()))
            return EXIT_PARTIAL if result.unresolved else EXIT_OK

        if args.command == "profile":
            profile = services.profiler.run(args.table, correlation_id=correlation_id)
            print(json.dumps(profile, indent=2, default=str))
            return EXIT_PARTIAL if profile["critical_issues"] else EXIT_OK

        rows = services.wallet.refresh_all(correlation_id=correlation_id)
        print(dumps({"rows_refreshed": rows}))
        return EXIT_OK

    except SettlementError as e:
        logger.error(
            f"[{e.error_code}] Settlement job failed | command={args.command} | "
            f"error={e.message} | correlation_id={correlation_id}"
        )
        return EXIT_FAILED


def main():
    """CLI entry point for the settlement job."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    )
    sys.exit(run())


if __name__ == "__main__":
    main()
