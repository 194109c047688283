#!/usr/bin/env python3
"""Create the demo trainer, client and admin accounts.

Usage:
    # Against the database in DATABASE_URL:
    python scripts/seed_users.py

    # Preview only:
    python scripts/seed_users.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET / JWT_REFRESH_SECRET: generated for the run when unset
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Seed demo accounts for the Fitness Scheduler auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be created without making changes",
    )
    args = parser.parse_args()

    for name in ("JWT_SECRET", "JWT_REFRESH_SECRET"):
        if not os.environ.get(name):
            os.environ[name] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # imported late so the environment above is what the settings see
    from fitauth.seed import seed_users
    from fitauth.service.runtime import Runtime

    try:
        results = seed_users(Runtime(), dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    for result in results:
        prefix = "[DRY RUN] " if result["status"] == "dry_run" else ""
        print(f"{prefix}{result['email']}: {result['status']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
