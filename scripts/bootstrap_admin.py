#!/usr/bin/env python3
"""Bootstrap an administrator account with a role and its permissions.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure@Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password 'Secure@Pass1'

Environment Variables:
    ADMIN_USERNAME: Username for the admin user (default: admin)
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
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

ADMIN_ROLE = "ADMIN"
DEFAULT_PERMISSIONS = (
    ("USER_MANAGE", "Manage users"),
    ("ROLE_MANAGE", "Manage roles and permissions"),
    ("SESSION_MANAGE", "Terminate user sessions"),
)


async def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    role_code: str = ADMIN_ROLE,
    first_login: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the admin role, its permissions and the admin user when missing.

    Returns:
        dict with user_id, email, role and status ('created', 'granted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from identity_core.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store
    auth = runtime.auth

    if dry_run:
        existing = store.find_user_by_email(email)
        print(
            f"[DRY RUN] Would ensure role {role_code} and "
            f"{'grant it to' if existing else 'create'} admin user {email}"
        )
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    role = store.find_role_by_code(role_code) or auth.create_role(
        role_code, "Administrator", "Full administrative access"
    )
    permission_ids = []
    for code, name in DEFAULT_PERMISSIONS:
        permission = store.find_permission_by_code(code) or auth.create_permission(code, name)
        permission_ids.append(permission.id)
    await auth.assign_permissions_to_role(role.id, permission_ids)

    existing_user = store.find_user_by_email(email)
    if existing_user:
        if auth.permissions.user_has_role(existing_user.id, role.id):
            print(f"User {email} already holds {role_code} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "role": role_code,
                "status": "already_admin",
            }
        await auth.assign_role(existing_user.id, role.id)
        print(f"Granted {role_code} to existing user {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "role": role_code, "status": "granted"}

    user = await auth.create_user(
        username, email, password, first_login=first_login, role_codes=[role_code]
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": role_code, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for identity-core",
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
    parser.add_argument("--role", default=ADMIN_ROLE, help="Role code to grant")
    parser.add_argument(
        "--first-login",
        action="store_true",
        help="Require the admin to reset the password via OTP on first login",
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/identity-core-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from identity_core.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username,
                args.email,
                args.password,
                role_code=args.role,
                first_login=args.first_login,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role: {result['role']}")
    elif result["status"] == "granted":
        print("\nExisting user granted the admin role!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
