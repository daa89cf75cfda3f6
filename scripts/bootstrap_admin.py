#!/usr/bin/env python3
"""Seed an organization and its first admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123' \\
        --org-name "Central Hospital" --org-type Hospital

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
    SHARED_FS_ROOT: Directory holding the credential store snapshot
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str, password: str, org_name: str, org_type: str, dry_run: bool = False
) -> dict:
    """Create the organization and admin unless the e-mail is already taken.

    Returns:
        dict with user_id, organization_id, email and status
    """
    # Import here to avoid loading config before env vars are set
    from medisecure.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_email(email)
    if existing:
        print(f"User {email} already exists with role {existing.role.value} (id: {existing.id})")
        return {
            "user_id": existing.id,
            "organization_id": existing.current_organization_id,
            "email": email,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create organization {org_name!r} with admin {email}")
        return {"user_id": None, "organization_id": None, "email": email, "status": "dry_run"}

    organization, admin = runtime.auth.register_organization(
        org_name, org_type, "Administrator", email, password
    )
    print(f"Created organization {organization.name} (id: {organization.id})")
    print(f"Created admin user: {email} (id: {admin.id})")
    return {
        "user_id": admin.id,
        "organization_id": organization.id,
        "email": email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an organization admin for MediSecure",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--org-name", default=os.environ.get("ADMIN_ORG_NAME", "Headquarters"))
    parser.add_argument(
        "--org-type",
        default=os.environ.get("ADMIN_ORG_TYPE", "Headquarters"),
        help="Hospital, Clinic, Pharmacy, Laboratory or Headquarters",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/medisecure-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from medisecure.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.email, args.password, args.org_name, args.org_type, args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message} {exc.public_detail() or ''}".rstrip())
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Organization ID: {result['organization_id']}")


if __name__ == "__main__":
    main()
