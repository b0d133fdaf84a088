"""
Forecourt Ledger CLI

Commands:
  serve        - Run the ledger API server
  init-db      - Create the database schema
  balance      - Show a creditor's balance against the ledger log
  check-drift  - Find (and optionally repair) creditor balance drift
  aging        - Print the receivables aging report for a station
"""

import argparse
import os
import sys

from core.config import LedgerConfig
from core.errors import LedgerError


def _database(config: LedgerConfig):
    from persistence.database import Database

    db = Database(config.database_url, config.lock_timeout_seconds)
    db.initialize()
    return db


def cmd_serve(args):
    """Run the ledger server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Forecourt Ledger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create tables and indexes."""
    config = LedgerConfig.from_env()
    db = _database(config)
    print(f"Schema ready ({'postgres' if db.is_postgres else 'sqlite'})")


def cmd_balance(args):
    """Show stored vs derived balance for one creditor."""
    from credit.ledger import CreditLedger

    config = LedgerConfig.from_env()
    ledger = CreditLedger(_database(config), config)

    creditor = ledger.get_creditor(args.creditor_id)
    check = ledger.reconcile_balance(args.creditor_id)

    print(f"Creditor: {creditor.name} ({creditor.creditor_id})")
    print(f"  Credit limit: {creditor.credit_limit if creditor.credit_limit > 0 else 'Unlimited'}")
    print(f"  Stored balance: {check.stored_balance}")
    print(f"  Ledger balance: {check.derived_balance}")
    print(f"  Total credit: {check.total_credit}")
    print(f"  Total settled: {check.total_settled}")
    if not check.consistent:
        print(f"  DRIFT: {check.drift}")
        sys.exit(2)


def cmd_check_drift(args):
    """Scan a station's creditors for balance drift."""
    from credit.ledger import CreditLedger

    config = LedgerConfig.from_env()
    ledger = CreditLedger(_database(config), config)

    drifted = ledger.find_drift(args.station_id)
    if not drifted:
        print("All creditor balances match the ledger")
        return

    for check in drifted:
        print(f"{check.creditor_id}: stored {check.stored_balance}, ledger {check.derived_balance}, drift {check.drift}")
        if args.repair:
            ledger.repair_balance(check.creditor_id)
            print(f"  repaired -> {check.derived_balance}")

    if not args.repair:
        sys.exit(2)


def cmd_aging(args):
    """Print the aging report."""
    from credit.aging import AgingService

    config = LedgerConfig.from_env()
    report = AgingService(_database(config)).aging_report(args.station_id, args.as_of)

    print(f"Aging report for {report.station_id} as of {report.as_of}")
    print("=" * 60)
    print(f"{'Creditor':<24}{'Balance':>12}{'0-30':>8}{'31-60':>8}{'61-90':>8}{'90+':>8}")
    for row in report.creditors:
        b = row.buckets
        flag = " *" if row.overdue else ""
        print(
            f"{row.creditor.name[:24]:<24}{row.creditor.current_balance:>12}"
            f"{b['0-30']:>8}{b['31-60']:>8}{b['61-90']:>8}{b['over_90']:>8}{flag}"
        )
    t = report.totals
    print("-" * 60)
    print(
        f"{'Total':<24}{report.total_outstanding:>12}"
        f"{t['0-30']:>8}{t['31-60']:>8}{t['61-90']:>8}{t['over_90']:>8}"
    )


def main():
    parser = argparse.ArgumentParser(
        description="Forecourt Ledger - fuel station financial ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show a creditor balance")
    balance_parser.add_argument("creditor_id", help="Creditor ID")

    # check-drift
    drift_parser = subparsers.add_parser("check-drift", help="Compare stored balances with the ledger")
    drift_parser.add_argument("station_id", help="Station ID")
    drift_parser.add_argument("--repair", action="store_true", help="Rewrite drifted balances from the ledger")

    # aging
    aging_parser = subparsers.add_parser("aging", help="Receivables aging report")
    aging_parser.add_argument("station_id", help="Station ID")
    aging_parser.add_argument("--as-of", dest="as_of", help="Report date (YYYY-MM-DD)")

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "init-db": cmd_init_db,
        "balance": cmd_balance,
        "check-drift": cmd_check_drift,
        "aging": cmd_aging,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except LedgerError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
