#!/usr/bin/env python3
"""
SheetFlow IAM -- operator command line.

Usage:
  python main.py serve --host 127.0.0.1 --port 8000
  python main.py create-admin --email admin@corp.com --department D1
  python main.py create-admin --email admin@corp.com --department D1 --password-stdin < pw.txt
  python main.py purge-sessions

Environment variables:
  SECRET_KEY     JWT signing and token digest key (32+ chars; required unless DEBUG=true).
  DATABASE_URL   SQLAlchemy URL of the account database (default: sqlite file next to this script).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.credentials import normalize_email
from auth.errors import ValidationError
from auth.models import Account, Role
from auth.passwords import PASSWORD_POLICY_MESSAGE, check_password_policy, hash_password
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from core.config import get_settings


def _read_password(from_stdin: bool) -> str:
    """Read the new admin password without echoing it.

    --password-stdin reads one line from stdin for scripted provisioning.
    """
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def create_admin(store: AuthStore, args: argparse.Namespace) -> int:
    """Create an ADMIN account directly in the store. Returns a process exit code.

    This is the bootstrap path: the HTTP API only hands out elevated roles to
    callers who already hold an ADMIN token.
    """
    password = _read_password(args.password_stdin)
    try:
        check_password_policy(password)
    except ValidationError:
        print(f"  [!] {PASSWORD_POLICY_MESSAGE}")
        return 1

    account = Account(
        email=normalize_email(args.email),
        password_hash=hash_password(password, get_settings().bcrypt_rounds),
        role=Role.ADMIN,
        department_id=args.department,
        first_name=args.first_name,
        last_name=args.last_name,
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError:
        print(f"  [!] An account with email '{account.email}' already exists.")
        return 1
    print(f"  Created ADMIN account id={account_id} ({account.email}) in department {account.department_id}.")
    return 0


def purge_sessions(store: AuthStore) -> int:
    service = AuthService(store, TokenIssuer.from_settings())
    purged = service.sessions.purge_expired()
    print(f"  Purged {purged} expired refresh session(s).")
    return 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sheetflow-iam",
        description="SheetFlow IAM -- accounts, sessions and 2FA for the instruction sheet workflow.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve_p = sub.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve_p.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve_p.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")
    serve_p.add_argument("--reload", action="store_true", help="Reload on code changes (development only).")

    admin_p = sub.add_parser("create-admin", help="Create an ADMIN account.")
    admin_p.add_argument("--email", required=True, help="Login email of the new admin.")
    admin_p.add_argument("--department", required=True, help="Department id the admin belongs to.")
    admin_p.add_argument("--first-name", default="Admin", help="Given name (default: Admin).")
    admin_p.add_argument("--last-name", default="User", help="Family name (default: User).")
    admin_p.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from stdin instead of prompting.",
    )

    sub.add_parser("purge-sessions", help="Delete expired refresh sessions and reset tokens.")

    args = parser.parse_args()

    if args.command == "serve":
        sys.exit(serve(args))

    store = AuthStore()
    try:
        if args.command == "create-admin":
            code = create_admin(store, args)
        else:
            code = purge_sessions(store)
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
