#!/usr/bin/env python3
"""
Run custom variant cleanup by hand, outside the API process.

Usage:
  python scripts/run_cleanup.py sweep
  python scripts/run_cleanup.py daily-scan
  python scripts/run_cleanup.py stats [--json]

Do not run this while the API's scheduler is active against the same
database: the in-process pass lock does not span processes.
"""

import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

from services.cleanup_scheduler import CleanupScheduler
from services.error_tracker import ErrorTracker
from services.session_store import SessionStore
from services.shopify_client import ShopifyClient
from services.storage import storage


def build_scheduler() -> CleanupScheduler:
    return CleanupScheduler(
        storage,
        SessionStore(),
        ShopifyClient.from_credentials,
        ErrorTracker(storage),
    )


async def run(command: str, as_json: bool = False) -> int:
    scheduler = build_scheduler()

    if command == "sweep":
        print("\n🧹 Running cleanup sweep...")
        stats = await scheduler.run_cleanup_pass()
    elif command == "daily-scan":
        print("\n🔎 Running daily full scan...")
        stats = await scheduler.run_daily_full_scan()
    else:
        report = await scheduler.get_cleanup_stats()
        if as_json:
            print(json.dumps(report, indent=2, default=str))
            return 0
        print("\n📊 Cleanup activity (last 24h):")
        for row in report["stats"]:
            print(f"   - {row['action']}: {row['count']}")
        print(f"   Pending deletion: {report['pendingDeletion']}")
        if report["recentErrors"]:
            print("\n⚠️  Recent errors:")
            for entry in report["recentErrors"]:
                print(f"   {entry['createdAt']} {entry['variantId']}: {entry['errorDetails']}")
        return 0

    print(f"   checked={stats.checked} deleted={stats.deleted} errors={stats.errors} "
          f"skipped={stats.skipped} dead_lettered={stats.dead_lettered}")
    if as_json:
        print(json.dumps(asdict(stats)))
    return 1 if stats.errors else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Custom variant cleanup")
    parser.add_argument("command", choices=["sweep", "daily-scan", "stats"])
    parser.add_argument("--json", action="store_true", help="machine-readable output")
    args = parser.parse_args(argv)
    return asyncio.run(run(args.command, args.json))


if __name__ == "__main__":
    sys.exit(main())
