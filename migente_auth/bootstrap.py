"""Bootstrap an admin account in both credential stores.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-1' migente-bootstrap-admin

    migente-bootstrap-admin --email admin@example.com --password 'Secure-Password-1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (12+ chars, 3 character classes)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

from migente_auth.logging import get_logger
from migente_auth.service.errors import ConflictError

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(auth, email: str, password: str, dry_run: bool = False) -> dict:
    """Create a confirmed admin account through ``auth``'s store.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin' or 'dry_run')
    """
    from migente_auth.storage.models import UserIdentity

    existing = auth.store.get_user_by_email(email)
    if existing:
        if existing.role == ADMIN_ROLE:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        raise ConflictError(
            f"{email} already belongs to a {existing.role} account",
            detail={"field": "email"},
        )
    if auth.store.get_legacy_credential_by_email(email):
        raise ConflictError(f"{email} already has a legacy credential", detail={"field": "email"})

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    primary_hash, algo, legacy_hash = auth.passwords.hash_both(password)
    candidate = UserIdentity.new(
        email, primary_hash, password_algo=algo, role=ADMIN_ROLE, confirmed=True
    )
    user, credential = auth.store.register_identity(candidate, legacy_hash)
    logger.info("admin_bootstrapped", user_id=user.id, credential_id=credential.id)
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for MiGente auth",
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
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # the CLI never rate-limits, so it does not need Redis
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # imported late so the environment above is read by the settings loader
    from migente_auth.service.runtime import get_runtime

    try:
        result = bootstrap_admin(
            get_runtime().auth, args.email.strip().lower(), args.password, args.dry_run
        )
    except ConflictError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print(f"No changes needed - {result['email']} is already an admin.")
    else:
        print(f"[DRY RUN] Would create admin user: {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
