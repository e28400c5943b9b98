#!/usr/bin/env python3
"""Create the first super admin account.

Every privileged operation requires an existing super admin, so a fresh
deployment needs one created out of band.

Usage:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='long passphrase' \
        python scripts/bootstrap_superadmin.py --name "Root"

    python scripts/bootstrap_superadmin.py --email root@example.com \
        --password 'long passphrase' --name Root

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password (at least 12 characters, 3 character classes)
    DATABASE_URL: PostgreSQL connection string, also read from .env
        (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import dotenv_values  # noqa: E402

from susi_auth.config import Settings, reset_settings_cache  # noqa: E402


def validate_password(password: str) -> bool:
    """Stricter than the API minimum: this account can do anything."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def select_store() -> str:
    """Use Postgres whenever DATABASE_URL is configured, in the environment or ``.env``.

    Otherwise fall back to the file-backed memory store for local bootstrapping.
    """
    settings = Settings.from_env()
    if settings.use_memory_store:
        return "memory"
    if os.environ.get("DATABASE_URL") or dotenv_values(".env").get("DATABASE_URL"):
        return "postgres"
    os.environ["USE_MEMORY_STORE"] = "true"
    reset_settings_cache()
    return "memory"


async def bootstrap_superadmin(
    name: str, email: str, password: str, dry_run: bool = False
) -> dict:
    # Imported late so the environment defaults set in main() are seen
    from susi_auth.service.runtime import get_runtime
    from susi_auth.storage.models import Role

    runtime = get_runtime()
    existing = await asyncio.to_thread(runtime.store.get_user_by_email, email)

    if existing:
        if existing.is_super_admin():
            return {"user_id": existing.id, "email": email, "status": "already_super_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await asyncio.to_thread(
            runtime.store.update_user, existing.id, role=Role.SUPER_ADMIN
        )
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(name, email, password, role=Role.SUPER_ADMIN)
    return {
        "user_id": result.user.id,
        "email": email,
        "status": "created",
        "provisioning_uri": result.provisioning_uri,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for the auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Super Admin"))
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
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if select_store() == "memory":
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_superadmin(args.name, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created super admin {result['email']} (id: {result['user_id']})")
        print(f"  TOTP enrollment: {result['provisioning_uri']}")
    elif status == "promoted":
        print(f"Promoted {result['email']} to super admin (id: {result['user_id']})")
    elif status == "already_super_admin":
        print(f"{result['email']} is already a super admin; nothing to do")
    else:
        print(f"[DRY RUN] No changes made for {result['email']}")


if __name__ == "__main__":
    main()
