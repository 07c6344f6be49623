#!/usr/bin/env python3
"""
Admin console -- command-line administration for the account store.

Usage:
  python main.py create-user alice --email alice@example.com --admin
  python main.py unlock alice
  python main.py list-users
  python main.py list-users --filter handle=al --sort handle --limit 20
  python main.py list-users --search smith
  python main.py purge-expired

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account store (default: ./adminconsole.db)
  SECRET_KEY    Required unless DEBUG=true. Used for session and remember-me hashing.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.exceptions import AccountConflictError, RegistrationError, StorageError
from auth.models import ADMIN_ROLE, DEFAULT_ROLE
from auth.passwords import PasswordCodec
from auth.registration import create_account
from auth.session import utcnow
from auth.store import AccountStore
from core.config import get_settings
from directory.engine import DirectoryQueryEngine
from directory.exceptions import QueryValidationError
from directory.models import ListingQuery
from directory.query import parse_filter_args, parse_sort


def _read_password() -> Optional[str]:
    """Prompt twice for a password. Returns None if the entries differ."""
    password = getpass.getpass("  Password: ")
    confirm = getpass.getpass("  Confirm password: ")
    if password != confirm:
        print("  [!] Passwords do not match.")
        return None
    return password


def _cmd_create_user(store: AccountStore, args: argparse.Namespace) -> int:
    password = _read_password()
    if password is None:
        return 1
    roles = {DEFAULT_ROLE, ADMIN_ROLE} if args.admin else {DEFAULT_ROLE}
    try:
        account = create_account(
            store,
            PasswordCodec.from_settings(),
            handle=args.handle,
            email=args.email,
            password=password,
            first_name=args.first_name,
            last_name=args.last_name,
            roles=roles,
        )
    except RegistrationError as e:
        print(f"  [!] {e}")
        return 1
    except AccountConflictError:
        print(f"  [!] A user with handle '{args.handle}' or email '{args.email}' already exists.")
        return 1
    print(f"  Created {account.handle} (id={account.id}, roles={', '.join(sorted(account.roles))}).")
    return 0


def _cmd_unlock(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.find_by_handle(args.handle)
    if account is None:
        print(f"  [!] No user named '{args.handle}'.")
        return 1
    store.unlock(account.id)
    print(f"  Unlocked {account.handle}.")
    return 0


def _cmd_list_users(store: AccountStore, args: argparse.Namespace) -> int:
    engine = DirectoryQueryEngine(store, max_page_size=get_settings().listing_max_page_size)
    try:
        query = ListingQuery(
            offset=args.offset,
            page_size=args.limit,
            sort=parse_sort(args.sort, "desc" if args.desc else "asc"),
            filters=parse_filter_args(args.filter),
            search=args.search,
        )
        result = engine.list(query)
    except QueryValidationError as e:
        print(f"  [!] {e}")
        return 1

    print(f"  {'KEY':>5}  {'HANDLE':<20} {'EMAIL':<32} {'ROLES':<12} STATUS")
    print("  " + "─" * 78)
    for account in result.rows:
        status = "locked" if account.account_locked else ("active" if account.active else "inactive")
        print(
            f"  {engine.row_identity(account):>5}  {account.handle:<20} {account.email:<32} "
            f"{','.join(sorted(account.roles)):<12} {status}"
        )
    print(f"\n  Page {result.page} of {result.page_count} ({result.total} matching).")
    return 0


def _cmd_purge_expired(store: AccountStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired(utcnow())
    print(f"  Removed {removed} expired session/remember-me row(s).")
    return 0


_COMMANDS = {
    "create-user": _cmd_create_user,
    "unlock": _cmd_unlock,
    "list-users": _cmd_list_users,
    "purge-expired": _cmd_purge_expired,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="admin-console",
        description="Manage admin console accounts from the command line.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --email alice@example.com --admin
  python main.py unlock alice
  python main.py list-users --filter email=example.com --sort created_at --desc
  DATABASE_URL=sqlite:////var/lib/console.db python main.py list-users
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account (prompts for the password)")
    create.add_argument("handle", help="Login handle, 3-50 characters")
    create.add_argument("--email", required=True, help="Email address")
    create.add_argument("--first-name", default="", help="First name")
    create.add_argument("--last-name", default="", help="Last name")
    create.add_argument("--admin", action="store_true", help="Grant the admin role")

    unlock = sub.add_parser("unlock", help="Clear a lockout and the failed-attempt counter")
    unlock.add_argument("handle", help="Handle of the locked account (case-insensitive)")

    listing = sub.add_parser("list-users", help="Print one page of the user directory")
    listing.add_argument(
        "--filter",
        action="append",
        default=[],
        metavar="COLUMN=TEXT",
        help="Substring filter, case-insensitive; repeatable (columns: handle, email, first_name, last_name)",
    )
    listing.add_argument(
        "--search",
        metavar="TEXT",
        help="Match TEXT in handle, email, first or last name (case-insensitive)",
    )
    listing.add_argument("--sort", metavar="COLUMN", help="Column to sort by")
    listing.add_argument("--desc", action="store_true", help="Sort descending")
    listing.add_argument("--offset", type=int, default=0, help="Rows to skip (default: 0)")
    listing.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")

    sub.add_parser("purge-expired", help="Delete expired sessions and remember-me tokens")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    store = AccountStore(get_settings().database_url)
    try:
        return _COMMANDS[args.command](store, args)
    except StorageError as e:
        print(f"  [!] Account store unavailable: {e}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
