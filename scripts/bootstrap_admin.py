#!/usr/bin/env python3
"""Bootstrap the provider organization and its first super_admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd!' \
        --org-name "Acme MSSP"

Environment Variables:
    ADMIN_EMAIL: Email for the super_admin
    ADMIN_PASSWORD: Initial password (checked against the configured password policy)
    PROVIDER_NAME: Provider organization name (default "MSS Provider")
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys


def bootstrap_admin(
    email: str, password: str, org_name: str, first_name: str, last_name: str, dry_run: bool = False
) -> dict:
    """Create the provider organization if missing, then a super_admin inside it.

    Returns:
        dict with org_id, user_id, email and status
    """
    # Imported here so env defaults below are in place before settings load
    from mssaccess.config import OrgType
    from mssaccess.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user and existing_user.status != "deleted":
        print(f"User {email} already exists (id: {existing_user.id}, role: {existing_user.role})")
        return {
            "org_id": existing_user.org_id,
            "user_id": existing_user.id,
            "email": email,
            "status": "exists",
        }

    providers, _ = runtime.directory.list_organizations(
        org_type=OrgType.PROVIDER.value, status="active", limit=1
    )
    if dry_run:
        action = "reuse" if providers else "create"
        print(f"[DRY RUN] Would {action} provider organization and create super_admin {email}")
        return {"org_id": None, "user_id": None, "email": email, "status": "dry_run"}

    provider = providers[0] if providers else runtime.directory.create_organization(
        org_name, OrgType.PROVIDER.value
    )
    user = runtime.directory.create_user(
        provider.id, email, first_name, last_name, "super_admin", password
    )
    print(f"Created super_admin {email} (id: {user.id}) in {provider.name}")
    return {"org_id": provider.id, "user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the MSS provider organization and a super_admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--org-name", default=os.environ.get("PROVIDER_NAME", "MSS Provider"))
    parser.add_argument("--first-name", default="Platform")
    parser.add_argument("--last-name", default="Admin")
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
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
        os.environ.setdefault("JWT_REFRESH_SECRET", secrets.token_urlsafe(48))
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from mssaccess.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            args.org_name,
            args.first_name,
            args.last_name,
            args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for detail in (exc.detail or {}).get("errors", []):
            print(f"  - {detail}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Provider org ID: {result['org_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
