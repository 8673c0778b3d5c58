#!/usr/bin/env python3
"""Create an admin identity, or promote an existing one.

Usage:
    ADMIN_USERNAME=root ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Pass-123' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username root --email admin@example.com \
        --password 'Secure-Pass-123' [--dry-run]

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: the admin credentials
    DATABASE_URL: PostgreSQL connection string (the file-backed memory store
        under STATE_DIR is used when unset)
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


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create or promote the admin.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so the environment is prepared before settings load
    from hackemon.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_email_or_username(email.strip().lower())

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_role(existing.id, "admin")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    check = runtime.policy.validate(password)
    if not check.valid:
        raise ValueError("password must contain " + ", ".join(check.messages))

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(username, email, password)
    if not result.ok:
        raise ValueError(f"{result.code.value}: {result.message}")
    runtime.store.update_role(result.identity.id, "admin")
    return {
        "user_id": result.identity.id,
        "email": result.identity.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for the hackemon auth API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using the file-backed memory store (set DATABASE_URL for PostgreSQL)")
    # lockout state is irrelevant for a one-shot CLI
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed; user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
