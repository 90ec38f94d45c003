#!/usr/bin/env python3
"""Reset a user's password and sign them out of every session.

Usage:
    # Using environment variables:
    RESET_EMAIL=user@example.com RESET_PASSWORD='NewPassword1!' python scripts/reset_password.py

    # Or with command line args (password prompted when omitted):
    python scripts/reset_password.py --email user@example.com

    # Only revoke refresh tokens, keep the password:
    python scripts/reset_password.py --email user@example.com --revoke-only

Environment Variables:
    RESET_EMAIL: Email of the account
    RESET_PASSWORD: New password (8-128 chars, two or more character classes)
    DATABASE_URL: PostgreSQL connection string (required)
    REDIS_URL: Redis connection string holding refresh tokens (required)
    JWT_SECRET: Same signing secret as the running service
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reset_password(email: str, password: str | None, dry_run: bool = False) -> dict:
    """Apply the reset through the auth service.

    Returns:
        dict with user_id, email, revoked count and status
    """
    # Import here to avoid loading config before env vars are set
    from lawmakers_auth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        user = runtime.store.get_user_by_email(email)
        if user is None:
            return {"user_id": None, "email": email, "status": "not_found", "revoked": 0}

        if dry_run:
            action = "revoke sessions for" if password is None else "reset password for"
            print(f"[DRY RUN] Would {action} {email} (id: {user.id})")
            return {"user_id": user.id, "email": email, "status": "dry_run", "revoked": 0}

        if password is None:
            revoked = await runtime.auth.revoke_sessions(email)
            return {"user_id": user.id, "email": email, "status": "revoked", "revoked": revoked}

        revoked = await runtime.auth.reset_password(email, password)
        return {"user_id": user.id, "email": email, "status": "reset", "revoked": revoked}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Reset a password and revoke refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("RESET_EMAIL"),
        help="Account email (or set RESET_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("RESET_PASSWORD"),
        help="New password (or set RESET_PASSWORD env var; prompted if omitted)",
    )
    parser.add_argument(
        "--revoke-only",
        action="store_true",
        help="Revoke every refresh token without changing the password",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or RESET_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") or not os.environ.get("REDIS_URL"):
        print("Error: DATABASE_URL and REDIS_URL must point at the live service stores")
        sys.exit(1)

    password = None
    if not args.revoke_only:
        password = args.password or getpass.getpass("New password: ")
        from lawmakers_auth.service.passwords import PasswordHasher

        problem = PasswordHasher.validate_strength(password)
        if problem:
            print(f"Error: {problem}")
            sys.exit(1)

    try:
        result = asyncio.run(reset_password(args.email, password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        print(f"Error: no account for {args.email}")
        sys.exit(1)
    elif result["status"] == "reset":
        print("\nPassword reset successfully!")
        print(f"  User ID: {result['user_id']}")
        print(f"  Sessions revoked: {result['revoked']}")
    elif result["status"] == "revoked":
        print(f"\nRevoked {result['revoked']} session(s) for {result['email']}.")


if __name__ == "__main__":
    main()
