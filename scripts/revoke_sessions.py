#!/usr/bin/env python3
"""Revoke every active refresh token of a principal.

Usage:
    python scripts/revoke_sessions.py --user-id 7f1c...
    python scripts/revoke_sessions.py --user-id 7f1c... --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: state directory for the memory store
    AUDIT_SINK: log, jsonl or redis
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke_sessions(user_id: str, dry_run: bool = False) -> dict:
    """Revoke the principal's active refresh tokens.

    Returns:
        dict with user_id, status ('revoked', 'dry_run' or 'unknown_user') and count
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if runtime.store.get_user(user_id) is None:
            print(f"No such user: {user_id}")
            return {"user_id": user_id, "status": "unknown_user", "count": 0}

        active = await runtime.tokens.list_active_refresh_tokens(user_id)
        if dry_run:
            print(f"[DRY RUN] Would revoke {len(active)} refresh token(s) for {user_id}")
            for record in active:
                print(f"  {record.id}  expires {record.expires_at.isoformat()}")
            return {"user_id": user_id, "status": "dry_run", "count": len(active)}

        count = await runtime.tokens.revoke_all_for_owner(user_id)
        print(f"Revoked {count} refresh token(s) for {user_id}")
        return {"user_id": user_id, "status": "revoked", "count": count}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke all refresh tokens of a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("REVOKE_USER_ID"),
        help="Principal id (or set REVOKE_USER_ID env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List what would be revoked without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or REVOKE_USER_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to target Postgres)")

    try:
        result = asyncio.run(revoke_sessions(args.user_id, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "unknown_user":
        sys.exit(2)


if __name__ == "__main__":
    main()
