#!/usr/bin/env python3
"""
Purge imported identities past the retention window.

An imported identity is a guest that was linked into a user. It is kept so
the link can be undone; once it is older than imported_retention_days it
may be soft-deleted, after which unlinking is no longer possible. Nothing
happens while imported_retention_days is unset, unless --days is given.

Usage:
    python scripts/purge_imported_identities.py --days 365             # preview
    python scripts/purge_imported_identities.py --days 365 --execute
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


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge old imported identities")
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (default: IMPORTED_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Soft-delete the identities (default: report only)",
    )
    parser.add_argument("--actor", type=int, default=None, help="Acting user id for the audit log")
    args = parser.parse_args()

    days = args.days if args.days is not None else settings.imported_retention_days
    if days is None:
        print("No retention window configured; imported identities are kept.")
        return 0

    with get_session() as session:
        service = IdentityService(session)
        identity_ids = service.purge_imported_identities(
            retention_days=days, apply=args.execute, actor_id=args.actor
        )

        if not identity_ids:
            print(f"No imported identities linked more than {days} days ago.")
            return 0

        verb = "Purged" if args.execute else "Would purge"
        print(f"{verb} {len(identity_ids)} imported identities:")
        for identity_id in identity_ids[:50]:
            print(f"- {identity_id}")
        if len(identity_ids) > 50:
            print(f"... and {len(identity_ids) - 50} more")

        if not args.execute:
            print("\nDry run complete. Re-run with --execute to purge.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
