#!/usr/bin/env python3
"""
IdeaBridge identity admin CLI -- inspect and remove accounts.

Operates directly on the configured store (DATABASE_URL), not over HTTP.

Usage:
  python main.py accounts
  python main.py accounts --json
  python main.py sessions --email someone@example.com
  python main.py remove --email someone@example.com

Environment variables:
  DATABASE_URL    SQLAlchemy URL of the identity store (default sqlite:///ideabridge_identity.db)
  SECRET_KEY      Required unless DEBUG=true (shared settings validation)
"""

import argparse
import json
import logging
import sys
from typing import Optional

from auth.service import AuthService, build_auth_service
from core.config import get_settings
from core.masking import mask_email

logger = logging.getLogger("ideabridge.cli")


def _cmd_accounts(service: AuthService, as_json: bool) -> int:
    accounts = service.identity.list()
    if as_json:
        rows = [
            {
                "id": a.id,
                "email": a.email,
                "display_name": a.display_name,
                "phone_verified": a.phone_verified,
                "created_at": a.created_at.isoformat(),
                "deleted_at": a.deleted_at.isoformat() if a.deleted_at else None,
            }
            for a in accounts
        ]
        print(json.dumps(rows, indent=2))
        return 0
    if not accounts:
        print("  No accounts.")
        return 0
    for a in accounts:
        state = "deleted" if a.deleted_at else ("verified" if a.phone_verified else "unverified")
        print(f"  {a.id}  {a.email:<40}  {state}")
    print(f"\n  {len(accounts)} account(s).")
    return 0


def _cmd_sessions(service: AuthService, email: str) -> int:
    account = service.identity.get_by_email(email)
    if account is None:
        print(f"  [!] No active account for {email}.")
        return 1
    sessions = service.sessions.list(account.id)
    for s in sessions:
        print(f"  {s.id}  created {s.created_at.isoformat()}  expires {s.expires_at.isoformat()}")
    print(f"\n  {len(sessions)} live session(s).")
    return 0


def _cmd_remove(service: AuthService, email: str) -> int:
    account = service.identity.get_by_email(email)
    if account is None:
        print(f"  [!] No active account for {email}.")
        return 1
    destroyed = service.delete_account(account)
    logger.info("Removed account %s (%s) from the CLI", account.id, mask_email(account.email))
    print(f"  Removed {account.email}: {destroyed} session(s) destroyed, account soft-deleted.")
    return 0


def main(argv: Optional[list[str]] = None, service: Optional[AuthService] = None) -> int:
    parser = argparse.ArgumentParser(
        description="IdeaBridge identity administration",
        epilog="Example: python main.py remove --email someone@example.com",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    accounts = sub.add_parser("accounts", help="List every account, including soft-deleted ones")
    accounts.add_argument("--json", action="store_true", help="Output as JSON")

    sessions = sub.add_parser("sessions", help="List live sessions for an account")
    sessions.add_argument("--email", required=True, help="Account email")

    remove = sub.add_parser("remove", help="Destroy sessions, clear verification, soft delete")
    remove.add_argument("--email", required=True, help="Account email")

    args = parser.parse_args(argv)

    owns_service = service is None
    if service is None:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
        service = build_auth_service(get_settings())
    try:
        if args.command == "accounts":
            return _cmd_accounts(service, args.json)
        if args.command == "sessions":
            return _cmd_sessions(service, args.email.strip().lower())
        return _cmd_remove(service, args.email.strip().lower())
    finally:
        if owns_service:
            service.close()


if __name__ == "__main__":
    sys.exit(main())
