#!/usr/bin/env python3
"""
Re-run identity propagation into game records.

Merges, links and claims write one propagation task per game collection.
Tasks that failed (a collection was unavailable) are retried here:
pending tasks and retry tasks whose backoff has elapsed are applied, and
--reset-failed puts tasks that ran out of attempts back in the queue
first.

Usage:
    python scripts/repropagate_identities.py               # show task counts
    python scripts/repropagate_identities.py --execute
    python scripts/repropagate_identities.py --execute --reset-failed --limit 500
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from scorebook.config import settings
from scorebook.db.session import get_session
from scorebook.identities.service import IdentityService

logging.basicConfig(level=settings.log_level, format=settings.log_format)
logger = logging.getLogger(__name__)


def _print_stats(stats: dict) -> None:
    print(
        "Propagation tasks: "
        + ", ".join(f"{status}={count}" for status, count in sorted(stats.items()))
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-run pending identity propagation tasks")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Apply pending and due retry tasks (default: only report counts)",
    )
    parser.add_argument(
        "--reset-failed",
        action="store_true",
        help="Reset permanently failed tasks to pending before the sweep",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of tasks to apply",
    )
    args = parser.parse_args()

    with get_session() as session:
        service = IdentityService(session)
        _print_stats(service.propagator.get_stats())

        if not args.execute:
            print("\nDry run complete. Re-run with --execute to apply pending tasks.")
            return 0

        if args.reset_failed:
            reset = service.propagator.reset_failed()
            logger.info("Reset %s failed propagation tasks", reset)

        result = service.run_pending_propagation(limit=args.limit)
        print(f"\nApplied {len(result.task_ids)} tasks. {result.summary()}")
        for collection, error in sorted(result.errors.items()):
            print(f"- {collection}: {error}")

        _print_stats(service.propagator.get_stats())
        return 1 if result.is_partial else 0


if __name__ == "__main__":
    raise SystemExit(main())
