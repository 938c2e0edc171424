#!/usr/bin/env python3
"""Create a user (or update its roles and password) in the configured store.

Usage:
    python scripts/bootstrap_user.py --username alice --password 'Secret123!' --roles admin,editor

Environment Variables:
    BOOTSTRAP_USERNAME / BOOTSTRAP_PASSWORD / BOOTSTRAP_ROLES: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(username: str, password: str, roles: set[str], dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from persistlogin.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} user {username} with roles {sorted(roles)}")
        return {"user_id": existing.id if existing else None, "status": "dry_run"}

    if existing:
        runtime.store.set_user_roles(existing.id, roles)
        runtime.identity.save_password(existing.id, password)
        return {"user_id": existing.id, "status": "updated"}

    user = runtime.store.create_user(username, roles=roles)
    runtime.identity.save_password(user.id, password)
    return {"user_id": user.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a persistlogin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("BOOTSTRAP_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument(
        "--roles",
        default=os.environ.get("BOOTSTRAP_ROLES", ""),
        help="Comma separated role names",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.username or not args.password:
        print("Error: --username and --password (or BOOTSTRAP_* env vars) are required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/persistlogin-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    roles = {part.strip() for part in args.roles.split(",") if part.strip()}
    try:
        result = bootstrap_user(args.username, args.password, roles, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{result['status']}: {args.username} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
