#!/usr/bin/env python3
"""Run the account maintenance sweeps once, outside the web process.

Usage:
    DATABASE_URL=postgresql://... python scripts/run_lifecycle.py
    python scripts/run_lifecycle.py --only trials
    python scripts/run_lifecycle.py --only sessions --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL for shared rate-limit counters
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

TASKS = ("trials", "sessions", "rate-limits")


async def run_sweeps(only: str | None, dry_run: bool) -> dict:
    # Import here so settings are read after argument parsing
    from estate_auth.service.runtime import get_runtime
    from estate_auth.service.trial import (
        select_expiry_candidates,
        select_reminder_candidates,
    )
    from estate_auth.storage.models import utcnow

    runtime = get_runtime()
    selected = [only] if only else list(TASKS)
    results: dict = {}

    if "trials" in selected:
        if dry_run:
            now = utcnow()
            accounts = runtime.store.list_trial_accounts()
            results["trials"] = {
                "reminders_due": len(
                    select_reminder_candidates(accounts, now, runtime.trials.policy)
                ),
                "expiries_due": len(select_expiry_candidates(accounts, now)),
            }
        else:
            sweep = await runtime.trials.run()
            results["trials"] = {
                "reminders_sent": sweep.reminders_sent,
                "trials_expired": sweep.trials_expired,
            }

    if "sessions" in selected and not dry_run:
        results["sessions"] = {"removed": runtime.sessions.sweep_expired()}

    if "rate-limits" in selected and not dry_run:
        results["rate-limits"] = {"removed": await runtime.limiter.sweep()}

    return results


def main():
    parser = argparse.ArgumentParser(
        description="Run trial, session and rate-limit sweeps once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--only", choices=TASKS, help="Run a single sweep")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report trial candidates without changing anything",
    )
    args = parser.parse_args()

    try:
        results = asyncio.run(run_sweeps(args.only, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for name, counts in results.items():
        summary = ", ".join(f"{key}={value}" for key, value in counts.items())
        print(f"{name}: {summary}")


if __name__ == "__main__":
    main()
