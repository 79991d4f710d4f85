#!/usr/bin/env python3
"""Seed the base permission catalog, the built-in roles and a super admin.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 python scripts/bootstrap_admin.py

    # Create the Postgres tables first:
    python scripts/bootstrap_admin.py --init-schema --username admin --email admin@example.com --password Secret123

Environment Variables:
    ADMIN_USERNAME: Username for the super admin (default: admin)
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import re
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MODULES = ("user", "role", "permission", "menu")
ACTIONS = ("create", "read", "update", "delete", "manage")

# code, name, level, permission codes (None means every seeded permission)
ROLES = (
    ("super_admin", "Super Administrator", 100, None),
    ("user", "User", 1, ("user:read", "menu:read")),
)

_PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)[a-zA-Z\d@$!%*?&]{6,100}$")


def validate_password(password: str) -> bool:
    return bool(_PASSWORD_PATTERN.match(password))


def init_schema(database_url: str) -> None:
    from warden.storage.postgres import PostgresStore

    store = PostgresStore(database_url, verify_schema=False)
    try:
        store.ensure_schema()
    finally:
        store.close()
    print("Postgres schema is in place")


async def seed_permissions(runtime, dry_run: bool) -> list:
    seeded = []
    for module in MODULES:
        for action in ACTIONS:
            code = f"{module}:{action}"
            existing = await asyncio.to_thread(runtime.store.find_permission_by_code, code)
            if existing:
                seeded.append(existing)
                continue
            if dry_run:
                print(f"[DRY RUN] Would create permission {code}")
                continue
            permission = await runtime.permissions.create(
                f"{module} {action}",
                module,
                action,
                resource=f"/api/{module}s",
                is_system=True,
            )
            seeded.append(permission)
            print(f"Created permission {code}")
    return seeded


async def seed_roles(runtime, permissions: list, dry_run: bool) -> dict:
    by_code = {p.code: p.id for p in permissions}
    roles = {}
    for code, name, level, grants in ROLES:
        existing = await asyncio.to_thread(runtime.store.get_role_by_code, code)
        if existing:
            roles[code] = existing
            continue
        if dry_run:
            print(f"[DRY RUN] Would create role {code}")
            continue
        permission_ids = list(by_code.values()) if grants is None else [
            by_code[g] for g in grants if g in by_code
        ]
        roles[code] = await runtime.roles.create(
            name, code, level=level, is_system=True, permission_ids=permission_ids
        )
        print(f"Created role {code}")
    return roles


async def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create the super admin, or promote the existing account.

    Returns:
        dict with user_id, username and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the environment defaults below are in place first
    from warden.service.auth import RegisterInput
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    permissions = await seed_permissions(runtime, dry_run)
    roles = await seed_roles(runtime, permissions, dry_run)

    existing = await asyncio.to_thread(runtime.store.get_user_by_username, username)
    if existing:
        if any(r.code == "super_admin" for r in existing.roles):
            print(f"User {username} already holds super_admin (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant super_admin to {username}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        await runtime.roles.assign_to_user(existing.id, [roles["super_admin"].id])
        print(f"Granted super_admin to {username} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super admin {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    result = await runtime.auth.register(
        RegisterInput(username=username, password=password, email=email)
    )
    await runtime.roles.assign_to_user(result.user.id, [roles["super_admin"].id])
    print(f"Created super admin {username} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "username": username,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed roles, permissions and a super admin for Warden",
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
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the Postgres tables before seeding",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be 6-100 characters with upper case, lower case and digits")
        sys.exit(1)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    elif args.init_schema and not args.dry_run:
        init_schema(database_url)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )

        if result["status"] == "created":
            print("\nSuper admin created successfully!")
            print(f"  Username: {result['username']}")
            print(f"  User ID: {result['user_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to super admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already a super admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
