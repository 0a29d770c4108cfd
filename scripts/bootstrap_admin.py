#!/usr/bin/env python3
"""Create or promote a system administrator, or seed the demo accounts.

Usage:
    # Using environment variables:
    ADMIN_IDENTIFIER=admin@example.com ADMIN_PASSWORD=SecurePassword123! \\
        STATE_PATH=./state/auth.json python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --identifier admin@example.com \\
        --password SecurePassword123! --state-path ./state/auth.json

    # Seed owner@bms.com / clerk@bms.com / admin@bms.com for local demos:
    python scripts/bootstrap_admin.py --seed-demo --state-path ./state/auth.json

Environment Variables:
    ADMIN_IDENTIFIER: Email or username for the admin
    ADMIN_PASSWORD: Password for the admin (must meet complexity requirements)
    STATE_PATH: JSON snapshot the server loads; required, an in-memory store
        would be discarded when this script exits
    AUTH_SECRET: Signing secret; the MFA encryption key is derived from it
        unless MFA_ENCRYPTION_KEY is set, so use the server's value
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(identifier: str, password: str, dry_run: bool = False) -> dict:
    """Create a system_admin, or promote an existing principal to it.

    Returns:
        dict with user_id, identifier, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the environment set up by main() is what Settings reads
    from bmsauth.service.policy import Role
    from bmsauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_identifier(identifier)

    if existing:
        if existing.role == Role.SYSTEM_ADMIN.value:
            print(f"{identifier} is already a system admin (id: {existing.id})")
            return {"user_id": existing.id, "identifier": identifier, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {identifier} from {existing.role} to system_admin")
            return {"user_id": existing.id, "identifier": identifier, "status": "dry_run"}
        runtime.store.update_role(existing.id, Role.SYSTEM_ADMIN.value)
        print(f"Promoted {identifier} to system_admin (id: {existing.id})")
        return {"user_id": existing.id, "identifier": identifier, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create system admin: {identifier}")
        return {"user_id": None, "identifier": identifier, "status": "dry_run"}

    principal = runtime.auth.register(identifier, password, role=Role.SYSTEM_ADMIN)
    print(f"Created system admin: {identifier} (id: {principal.id})")
    return {"user_id": principal.id, "identifier": principal.identifier, "status": "created"}


def seed_demo(dry_run: bool = False) -> int:
    from bmsauth.service.runtime import get_runtime
    from bmsauth.storage.memory import DEMO_USERS

    runtime = get_runtime()
    if dry_run:
        missing = [i for i, _, _ in DEMO_USERS if not runtime.store.find_by_identifier(i)]
        print(f"[DRY RUN] Would seed: {', '.join(missing) or 'nothing'}")
        return 0
    created = runtime.store.seed_demo_users(runtime.hasher.hash)
    print(f"Seeded {created} demo account(s)")
    return created


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a system admin for the BMS auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("ADMIN_IDENTIFIER"),
        help="Admin email or username (or set ADMIN_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--state-path",
        default=os.environ.get("STATE_PATH"),
        help="Credential store snapshot (or set STATE_PATH env var)",
    )
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Seed the owner/clerk/admin demo accounts instead of creating an admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.state_path:
        print("Error: --state-path or STATE_PATH environment variable required")
        sys.exit(1)
    os.environ["STATE_PATH"] = args.state_path

    if not os.environ.get("AUTH_SECRET"):
        print("Error: AUTH_SECRET must match the server's value")
        sys.exit(1)

    try:
        if args.seed_demo:
            seed_demo(args.dry_run)
            return

        if not args.identifier:
            print("Error: --identifier or ADMIN_IDENTIFIER environment variable required")
            sys.exit(1)
        if not args.password:
            print("Error: --password or ADMIN_PASSWORD environment variable required")
            sys.exit(1)
        if not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            print("       (uppercase, lowercase, digits, special characters)")
            sys.exit(1)

        result = bootstrap_admin(args.identifier, args.password, args.dry_run)
        if result["status"] == "created":
            print("\nSystem admin created. Enroll MFA with POST /v1/auth/mfa/setup;")
            print("until then the account logs in with its password alone.")
        elif result["status"] == "promoted":
            print("\nExisting principal promoted to system_admin.")
        elif result["status"] == "already_admin":
            print("\nNo changes needed.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
