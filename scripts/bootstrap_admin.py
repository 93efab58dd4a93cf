#!/usr/bin/env python3
"""Seed the system roles and create the first super administrator.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password ...

Environment Variables:
    ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD: the administrator credentials
    DATABASE_URL: PostgreSQL connection string (schema from scripts/schema.sql)
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: required, must differ
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

SYSTEM_ROLES = [
    # slug, name, hierarchy level
    ("super_admin", "Super Administrador", 100),
    ("administrador", "Administrador", 50),
    ("usuario_basico", "Usuario Basico", 0),
]

ADMIN_PERMISSIONS = [
    ("usuarios", "usuarios", "ver"),
    ("usuarios", "usuarios", "reset_password"),
    ("usuarios", "usuarios", "cambiar_estado"),
]


def seed_roles(store) -> dict:
    """Create missing system roles and admin permissions; returns roles by slug."""
    roles = {}
    with store.transaction():
        for slug, name, level in SYSTEM_ROLES:
            role = store.get_role_by_slug(slug)
            if role is None:
                role = store.create_role(slug, name, hierarchy_level=level, is_system=True)
                print(f"Created role {slug}")
            roles[slug] = role
        for module, resource, action in ADMIN_PERMISSIONS:
            slug = f"{module}.{resource}.{action}"
            permission = store.get_permission_by_slug(slug)
            if permission is None:
                permission = store.create_permission(module, resource, action)
                print(f"Created permission {slug}")
            for role_slug in ("super_admin", "administrador"):
                store.grant_permission(roles[role_slug].id, permission.id)
    return roles


async def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from citizenauth.service.context import OperationContext
    from citizenauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_account(email) or runtime.store.find_account(username)
    if existing:
        print(f"Account {existing.username} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would seed roles and create super administrator {username}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    seed_roles(runtime.store)
    account = await runtime.auth.admin_create_account(
        username,
        email,
        password,
        OperationContext(),
        role_slugs=["super_admin"],
        require_password_change=False,
    )
    print(f"Created super administrator {account.username} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first super administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
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

    from citizenauth.config import ConfigurationError
    from citizenauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        sys.exit(2)
    except ServiceError as exc:
        print(f"Error: {exc.message} {exc.detail or ''}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper administrator created successfully!")
        print(f"  Account ID: {result['account_id']}")


if __name__ == "__main__":
    main()
