#!/usr/bin/env python3
"""Create (or reuse) a principal and mint an API key for it.

Usage:
    python scripts/issue_api_key.py --email ops@example.com --name "deploy bot" \
        --permission read --permission write

    # Memory store under a throwaway root when DATABASE_URL is not set:
    python scripts/issue_api_key.py --email dev@example.com --name local --dry-run

The plaintext key is printed once and never stored; copy it now.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
    API_KEY_PREFIX: literal placed before '_' in the key (default: pk)
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


async def issue_key(
    email: str,
    name: str,
    permissions: list[str] | None,
    expires_in: int | None,
    ip_allowlist: list[str] | None,
    *,
    role: str = "user",
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from portcullis.config import get_settings
    from portcullis.service.runtime import Runtime

    runtime = Runtime(get_settings(), connect_cache=False)
    try:
        user = runtime.store.get_user_by_email(email)
        if dry_run:
            action = "reuse" if user else "create"
            print(f"[DRY RUN] Would {action} principal {email} and issue key '{name}'")
            return {"user_id": user.id if user else None, "status": "dry_run"}
        if user is None:
            user = runtime.store.create_user(email, role=role)
            print(f"Created principal {email} (id: {user.id})")
        record, plaintext = await runtime.vault.issue(
            user.id,
            name,
            permissions=permissions,
            expires_in=expires_in,
            ip_allowlist=ip_allowlist,
        )
        return {
            "user_id": user.id,
            "key_id": record.id,
            "key": plaintext,
            "masked": runtime.vault.masked(record),
            "status": "issued",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Issue a portcullis API key",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("PRINCIPAL_EMAIL"), help="Owner email")
    parser.add_argument("--name", required=True, help="Display name, unique per owner")
    parser.add_argument(
        "--permission",
        dest="permissions",
        action="append",
        help="Capability string; repeat for several (default: read)",
    )
    parser.add_argument("--expires-in", type=int, default=None, help="Lifetime in seconds")
    parser.add_argument(
        "--allow-ip", dest="ip_allowlist", action="append", help="Restrict to this address"
    )
    parser.add_argument("--role", default="user", help="Role when creating the principal")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or PRINCIPAL_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/portcullis-cli")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("JWT_SECRET"):
        # Key issuance never signs tokens; the runtime only needs a value
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        result = asyncio.run(
            issue_key(
                args.email,
                args.name,
                args.permissions,
                args.expires_in,
                args.ip_allowlist,
                role=args.role,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "issued":
        print("\nAPI key issued. It will not be shown again:")
        print(f"  {result['key']}")
        print(f"  Key ID: {result['key_id']}")
        print(f"  Display: {result['masked']}")


if __name__ == "__main__":
    main()
