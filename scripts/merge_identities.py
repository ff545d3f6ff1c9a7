#!/usr/bin/env python3
"""
Merge duplicate player identities from the command line.

The target identity is kept; every source is folded into it (names become
aliases, stats are combined) and game records are re-pointed.

Usage:
    python scripts/merge_identities.py 12 40 41            # preview
    python scripts/merge_identities.py 12 40 41 --execute --actor 1
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from scorebook.config import settings
from scorebook.db.session import get_session
from scorebook.identities.errors import IdentityError
from scorebook.identities.service import IdentityService

logging.basicConfig(level=settings.log_level, format=settings.log_format)
logger = logging.getLogger(__name__)


def _describe(service: IdentityService, identity_id: int) -> str:
    view = service.get_identity(identity_id, admin=True)
    aliases = ", ".join(a.name for a in view.aliases) or "-"
    owner = f"user {view.user_id}" if view.user_id else "unowned"
    return (
        f"{view.id}:{view.display_name} [{view.kind}/{view.state}, {owner}] "
        f"games={view.total_games} wins={view.total_wins} aliases=({aliases})"
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Merge player identities")
    parser.add_argument("target_id", type=int, help="Identity to keep")
    parser.add_argument("source_ids", type=int, nargs="+", help="Identities to merge into the target")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Perform the merge (default: preview only)",
    )
    parser.add_argument("--actor", type=int, default=None, help="Acting user id for the audit log")
    args = parser.parse_args()

    with get_session() as session:
        service = IdentityService(session)

        try:
            print(f"Target: {_describe(service, args.target_id)}")
            for source_id in args.source_ids:
                print(f"Source: {_describe(service, source_id)}")
        except IdentityError as e:
            print(f"Error: {e}")
            return 1

        if not args.execute:
            print("\nDry run complete. Re-run with --execute to merge.")
            return 0

        try:
            view = service.merge(args.target_id, args.source_ids, actor_id=args.actor)
        except IdentityError as e:
            logger.error("Merge failed: %s", e)
            return 1

        print(f"\nMerged into {_describe(service, view.id)}")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
