#!/usr/bin/env python3
"""Bootstrap the first administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

The user is created in the identity provider when missing, given admin claims,
a profile record with the default admin capabilities, and an entry in the
admin allow-list.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password used only when the user has to be created
    FIREBASE_CREDENTIALS_PATH / FIREBASE_CREDENTIALS_JSON: service account
    USE_MEMORY_STORE: set to true for a throwaway in-memory run
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    runtime,
    email: str,
    password: Optional[str] = None,
    *,
    capabilities: Optional[Sequence[str]] = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, capabilities, and status
        ('created', 'promoted', or 'dry_run')
    """
    from hiq.service.identity import ProviderUserNotFound, Role
    from hiq.storage.documents import ACCESS_CONTROL, ADMIN_ALLOW_LIST_DOC, USERS

    email = email.strip().lower()
    capabilities = list(capabilities or runtime.settings.default_admin_capabilities)
    try:
        user = runtime.provider.get_user_by_email(email)
        status = "promoted"
    except ProviderUserNotFound:
        user = None
        status = "created"

    if dry_run:
        action = "promote existing user" if user else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": user.uid if user else None,
            "email": email,
            "capabilities": capabilities,
            "status": "dry_run",
        }

    if user is None:
        if not password:
            raise ValueError("a password is required to create a new admin user")
        user = runtime.provider.create_user(email, password, "Administrator", email_verified=True)
        print(f"Created admin user: {email} (id: {user.uid})")

    runtime.roles.assign_role(user.uid, Role.ADMIN)
    runtime.store.set(USERS, user.uid, {"capabilities": capabilities}, merge=True)
    runtime.store.array_union(ACCESS_CONTROL, ADMIN_ALLOW_LIST_DOC, "emails", [email])
    return {
        "user_id": user.uid,
        "email": email,
        "capabilities": capabilities,
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for HireIQ",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
        "--capability",
        action="append",
        dest="capabilities",
        help="Capability to grant; repeat for several (defaults to DEFAULT_ADMIN_CAPABILITIES)",
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

    from hiq.service.runtime import get_runtime

    try:
        result = bootstrap_admin(
            get_runtime(),
            args.email,
            args.password,
            capabilities=args.capabilities,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    if result["status"] != "dry_run":
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Capabilities: {', '.join(result['capabilities'])}")


if __name__ == "__main__":
    main()
