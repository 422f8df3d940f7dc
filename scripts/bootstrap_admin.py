#!/usr/bin/env python3
"""Grant a user the wildcard admin role.

Creates the role on first use (permissions ``["*"]``), upserts the user and
assigns the role. Running it again for the same user is a no-op.

Usage:
    # Using environment variables:
    ADMIN_USER_ID=u-123 ADMIN_EMAIL=ops@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --user-id u-123 --email ops@example.com

Environment Variables:
    ADMIN_USER_ID: Identity-provider subject of the user to promote
    ADMIN_EMAIL: Email recorded on the user when it is first created (optional)
    ADMIN_ROLE_NAME: Role name to create/assign (default: admin)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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

BOOTSTRAP_ACTOR = "bootstrap_admin"


async def bootstrap_admin(
    user_id: str,
    email: str | None = None,
    role_name: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Ensure ``user_id`` holds the wildcard role.

    Returns:
        dict with user_id, role_id, and status ('assigned', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from arenaauth.service.errors import ConflictError
    from arenaauth.service.runtime import Runtime

    runtime = Runtime()
    try:
        role = runtime.store.get_role_by_name(role_name)
        if dry_run:
            action = "reuse" if role else "create"
            print(f"[DRY RUN] Would {action} role '{role_name}' and assign it to {user_id}")
            return {"user_id": user_id, "role_id": role.id if role else None, "status": "dry_run"}

        if role is None:
            role = await runtime.auth.create_role(
                role_name,
                ["*"],
                "Full administrative access",
                created_by=BOOTSTRAP_ACTOR,
            )
            print(f"Created role '{role.name}' (id: {role.id})")
        elif "*" not in role.permissions:
            print(f"Warning: existing role '{role.name}' does not grant '*'")

        await runtime.auth.upsert_user(user_id, email=email)
        try:
            await runtime.auth.assign_role(user_id, role.id, BOOTSTRAP_ACTOR)
        except ConflictError:
            print(f"User {user_id} already holds '{role.name}'")
            return {"user_id": user_id, "role_id": role.id, "status": "already_admin"}

        print(f"Assigned '{role.name}' to {user_id}")
        return {"user_id": user_id, "role_id": role.id, "status": "assigned"}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin role assignment for arenaauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("ADMIN_USER_ID"),
        help="User id to promote (or set ADMIN_USER_ID env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Email to record when the user is created (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--role-name",
        default=os.environ.get("ADMIN_ROLE_NAME", "admin"),
        help="Role name to create or reuse (default: admin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or ADMIN_USER_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("ARENAAUTH_STATE_DIR"):
        os.environ["ARENAAUTH_STATE_DIR"] = "/tmp/arenaauth-bootstrap"

    # Use a persisted memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("PERSIST_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.user_id, args.email, args.role_name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "assigned":
        print("\nAdmin role assigned successfully!")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role ID: {result['role_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
