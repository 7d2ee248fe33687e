#!/usr/bin/env python3
"""Create an administrator record for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin
    ADMIN_EMAIL: Email for the admin
    ADMIN_PASSWORD: Password for the admin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Admins need 12+ characters drawn from at least three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    first_name: str = "",
    last_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the admin unless one with this username or email exists.

    Returns:
        dict with admin_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from stoneridge.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_admin_by_username_or_email(
        username
    ) or runtime.store.find_admin_by_username_or_email(email)
    if existing:
        print(f"Admin {existing.username} already exists (id: {existing.id})")
        return {"admin_id": existing.id, "username": existing.username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin: {username} <{email}>")
        return {"admin_id": None, "username": username, "status": "dry_run"}

    admin = runtime.store.create_admin(
        username,
        email,
        runtime.hasher.hash(password),
        first_name=first_name,
        last_name=last_name,
    )
    print(f"Created admin: {admin.username} (id: {admin.id})")
    return {"admin_id": admin.id, "username": admin.username, "status": "created"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for StoneRidge Marketplace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
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
    parser.add_argument("--first-name", default="", help="Admin first name")
    parser.add_argument("--last-name", default=None, help="Admin last name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        result = bootstrap_admin(
            args.username,
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Admin ID: {result['admin_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - admin already exists.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
