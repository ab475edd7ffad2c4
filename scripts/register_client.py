#!/usr/bin/env python3
"""Register an OAuth client and optionally grant a user an entitlement to its product.

Usage:
    DATABASE_URL=postgresql://... python scripts/register_client.py \\
        --client-id portal --redirect-uri https://portal.example.com/callback \\
        --scope openid --scope profile --generate-secret

    # Grant a user access to the client's product in one tenant:
    python scripts/register_client.py --client-id portal --redirect-uri ... \\
        --grant-user user-1 --tenant-id t-1 --organization-id org-1 --role admin

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses a throwaway memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_store():
    if os.environ.get("DATABASE_URL"):
        from identity_core.storage.postgres import PostgresStore

        return PostgresStore(os.environ["DATABASE_URL"])
    from identity_core.storage.memory import MemoryStore

    print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    return MemoryStore()


def register(store, args: argparse.Namespace) -> dict:
    from identity_core.service.client_auth import hash_client_secret

    secret = None
    secret_hash = None
    if args.generate_secret:
        secret = secrets.token_urlsafe(32)
        secret_hash = hash_client_secret(secret, algorithm=args.secret_algorithm)

    client = store.register_client(
        args.client_id,
        product_id=args.product_id,
        name=args.name,
        redirect_uris=args.redirect_uri,
        scopes=args.scope or ["openid"],
        client_secret_hash=secret_hash,
    )
    result = {
        "client_id": client.client_id,
        "product_id": client.product_id,
        "client_secret": secret,
        "entitlement_id": None,
    }
    if args.grant_user:
        entitlement = store.grant_entitlement(
            user_id=args.grant_user,
            product_id=client.product_id,
            tenant_id=args.tenant_id,
            organization_id=args.organization_id,
            roles=args.role or [],
        )
        result["entitlement_id"] = entitlement.id
    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Register an OAuth client for Identity Core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", required=True)
    parser.add_argument("--name", help="Display name (defaults to the client id)")
    parser.add_argument("--product-id", help="Product the client belongs to (random if omitted)")
    parser.add_argument(
        "--redirect-uri", action="append", required=True, help="Repeat for several URIs"
    )
    parser.add_argument("--scope", action="append", help="Allowed scope; repeat for several")
    parser.add_argument(
        "--generate-secret",
        action="store_true",
        help="Create a confidential client and print its secret once",
    )
    parser.add_argument("--secret-algorithm", choices=["argon2id", "sha256"], default="argon2id")
    parser.add_argument("--grant-user", help="User id to entitle to the client's product")
    parser.add_argument("--tenant-id")
    parser.add_argument("--organization-id")
    parser.add_argument("--role", action="append", help="Role for the granted entitlement")

    args = parser.parse_args(argv)

    if args.grant_user and not (args.tenant_id and args.organization_id):
        print("Error: --grant-user requires --tenant-id and --organization-id")
        return 1

    from identity_core.storage.errors import ConstraintViolation

    try:
        result = register(build_store(), args)
    except ConstraintViolation as exc:
        print(f"Error: {exc.message} ({exc.detail})")
        return 1

    print(f"Registered client {result['client_id']} (product: {result['product_id']})")
    if result["client_secret"]:
        print(f"  Client secret (shown once): {result['client_secret']}")
    if result["entitlement_id"]:
        print(f"  Entitlement: {result['entitlement_id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
