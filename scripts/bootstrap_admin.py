#!/usr/bin/env python3
"""Grant the ADMIN role to a user for initial setup.

Users normally appear on their first OIDC login. Run this afterwards to make
one of them an administrator, or pass both --subject and --email to
provision the user up front.

Usage:
    python scripts/bootstrap_admin.py --email admin@example.com
    python scripts/bootstrap_admin.py --subject idp|1234 --email admin@example.com

Environment Variables:
    ADMIN_EMAIL: Email of the user to promote
    ADMIN_SUBJECT: Identity-provider subject of the user to promote
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str | None, subject: str | None, dry_run: bool = False
) -> dict:
    """Promote (or provision and promote) a user.

    Returns:
        dict with user_id, email, and status
    """
    # Import here so env defaults set in main() are seen by the settings loader
    from sessioncore.service.runtime import get_runtime
    from sessioncore.storage.models import ROLE_ADMIN, SYSTEM_ACTOR

    runtime = get_runtime()
    store = runtime.store

    user = store.get_user_by_subject(subject) if subject else None
    if user is None and email:
        user = store.get_user_by_email(email)

    if user is None:
        if not (subject and email):
            print("User not found; pass both --subject and --email to provision one")
            return {"user_id": None, "email": email, "status": "not_found"}
        if dry_run:
            print(f"[DRY RUN] Would provision {email} ({subject}) as admin")
            return {"user_id": None, "email": email, "status": "dry_run"}
        user = runtime.provisioner.resolve_user(subject, email)
        await runtime.admin.grant_role(user.id, ROLE_ADMIN, actor=SYSTEM_ACTOR)
        print(f"Provisioned admin user: {user.email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "created"}

    if ROLE_ADMIN in runtime.provisioner.roles_for(user.id):
        print(f"User {user.email} already has the admin role (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would grant admin to {user.email}")
        return {"user_id": user.id, "email": user.email, "status": "dry_run"}

    await runtime.admin.grant_role(user.id, ROLE_ADMIN, actor=SYSTEM_ACTOR)
    print(f"Granted admin to {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Grant the ADMIN role to a session-core user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="User email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--subject",
        default=os.environ.get("ADMIN_SUBJECT"),
        help="Identity-provider subject (or set ADMIN_SUBJECT env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email and not args.subject:
        print("Error: --email or --subject is required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.subject, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "not_found":
        sys.exit(1)


if __name__ == "__main__":
    main()
