#!/usr/bin/env python3
"""Bootstrap a system administrator identity.

Public system-admin join is disabled by default; this script is the
supported way to create the first one.

Usage:
    # Using environment variables:
    SYSTEM_ADMIN_EMAIL=root@example.com SYSTEM_ADMIN_PASSWORD=... python scripts/bootstrap_system_admin.py

    # Or with command line args:
    python scripts/bootstrap_system_admin.py --email root@example.com --password ...

Environment Variables:
    SYSTEM_ADMIN_EMAIL: Email for the system administrator
    SYSTEM_ADMIN_PASSWORD: Password (8 to 64 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_system_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the system admin, or reset its password when it already exists.

    Returns:
        dict with identity_id, email, and status ('created', 'password_reset' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authkernel.service.runtime import get_runtime
    from authkernel.storage.models import ActorKind

    runtime = get_runtime()
    store = runtime.store
    hasher = runtime.auth.hasher
    now = runtime.auth.clock.now()

    existing = store.get_identity_by_email(ActorKind.SYSTEM_ADMIN, email)
    if dry_run:
        action = "reset password for" if existing else "create"
        print(f"[DRY RUN] Would {action} system admin {email}")
        return {"identity_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    digest, algo = hasher.hash_password(password)
    if existing:
        store.update_identity_password(existing.actor, digest, algo, now=now)
        print(f"Reset password for system admin {email} (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "password_reset"}

    identity = store.create_identity(
        ActorKind.SYSTEM_ADMIN,
        email=email,
        password_hash=digest,
        password_algo=algo,
        email_verified=True,
        now=now,
    )
    print(f"Created system admin: {email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a system administrator for authkernel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SYSTEM_ADMIN_EMAIL"),
        help="System admin email (or set SYSTEM_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SYSTEM_ADMIN_PASSWORD"),
        help="System admin password (or set SYSTEM_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SYSTEM_ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SYSTEM_ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from authkernel.service.hashing import password_policy_violation

    violation = password_policy_violation(args.password)
    if violation:
        print(f"Error: {violation}")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authkernel-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_system_admin(args.email.strip().lower(), args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSystem admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "password_reset":
        print("\nExisting system admin password reset.")


if __name__ == "__main__":
    main()
