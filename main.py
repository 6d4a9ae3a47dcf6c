#!/usr/bin/env python3
"""
Onboarding admin CLI -- seed accounts, manage the whitelist, generate secrets.

Usage:
  python main.py seed users.json
  python main.py seed users.json --reset
  python main.py whitelist add --domain example.com
  python main.py whitelist add --email someone@elsewhere.org
  python main.py whitelist list
  python main.py gen-secret

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default sqlite:///onboarding.db).
  DEBUG         Set to true to run without JWT_SECRET / JWT_PUBLIC_SECRET configured.

Seed file format -- a JSON list of objects:
  [{"email": "admin@example.com", "password": "changeme", "role": "admin", "registered": true}]
  role defaults to "user"; registered defaults to false.
"""

import argparse
import asyncio
import base64
import json
import secrets
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.exc import IntegrityError

from auth.errors import ValidationError
from auth.models import ROLE_USER, ROLES, STATUS_APPROVED, Account, Registration, WhitelistEntry
from auth.registration import normalize_domain, normalize_email
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings


def _load_users(path: str) -> list[dict]:
    """Read the seed file. Exits with a message on unreadable or malformed input."""
    file_path = Path(path).resolve()
    if not file_path.is_file():
        sys.exit(f"  [!] '{path}' is not a readable file.")
    try:
        data = json.loads(file_path.read_text())
    except (OSError, ValueError) as e:
        sys.exit(f"  [!] Could not read seed file '{path}': {e}")
    if not isinstance(data, list):
        sys.exit("  [!] Seed file must contain a JSON list of accounts.")
    return data


def _account_from_seed(entry: dict) -> Account:
    role = entry.get("role", ROLE_USER)
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    registration = Registration()
    if entry.get("registered"):
        registration = Registration(
            date=datetime.now(timezone.utc).isoformat(),
            status=STATUS_APPROVED,
            registered=True,
        )
    password = entry.get("password")
    return Account(
        email=normalize_email(entry.get("email", "")),
        password_digest=hash_password(password) if password else None,
        role=role,
        registration=registration,
    )


async def _seed(store: AccountStore, users: list[dict], reset: bool) -> int:
    if reset:
        removed = await store.delete_all_accounts()
        print(f"  Removed {removed} existing account(s).")

    created = 0
    for i, entry in enumerate(users):
        try:
            account = _account_from_seed(entry)
        except (ValidationError, ValueError) as e:
            print(f"  [!] Skipping entry {i}: {e}")
            continue
        try:
            await store.create(account)
        except IntegrityError:
            print(f"  [!] Skipping {account.email}: already exists.")
            continue
        created += 1
    return created


async def _whitelist_add(store: AccountStore, email: str | None, domain: str | None) -> int:
    entry = WhitelistEntry(
        email=normalize_email(email) if email else None,
        domain=normalize_domain(domain) if domain else None,
    )
    return await store.add_whitelist_entry(entry)


def _generate_secret() -> str:
    """Return 32 random bytes, base64-encoded (256 bits)."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="onboarding",
        description="Administrative tasks for the onboarding service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed users.json --reset
  python main.py whitelist add --domain example.com
  python main.py whitelist list
  python main.py gen-secret >> .env
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed", help="Create accounts from a JSON file")
    seed.add_argument("file", metavar="PATH", help="JSON list of accounts to create")
    seed.add_argument(
        "--reset",
        action="store_true",
        help="Delete every existing account before importing",
    )

    whitelist = sub.add_parser("whitelist", help="Manage whitelisted emails and domains")
    wl_sub = whitelist.add_subparsers(dest="whitelist_command", metavar="ACTION")
    wl_add = wl_sub.add_parser("add", help="Whitelist one email or one domain")
    target = wl_add.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="A single email address")
    target.add_argument("--domain", help="A domain; its subdomains match too")
    wl_sub.add_parser("list", help="Print every whitelist entry")

    sub.add_parser("gen-secret", help="Print fresh JWT_SECRET and JWT_PUBLIC_SECRET values")

    args = parser.parse_args()

    if args.command == "gen-secret":
        print(f"JWT_SECRET={_generate_secret()}")
        print(f"JWT_PUBLIC_SECRET={_generate_secret()}")
        return

    if args.command not in ("seed", "whitelist") or (args.command == "whitelist" and not args.whitelist_command):
        parser.print_help()
        return

    store = AccountStore(db_url=get_settings().database_url)
    try:
        if args.command == "seed":
            users = _load_users(args.file)
            created = asyncio.run(_seed(store, users, args.reset))
            print(f"  Imported {created} of {len(users)} account(s).")
        elif args.whitelist_command == "add":
            try:
                entry_id = asyncio.run(_whitelist_add(store, args.email, args.domain))
            except IntegrityError:
                sys.exit("  [!] That entry is already whitelisted.")
            except ValidationError as e:
                sys.exit(f"  [!] {e}")
            print(f"  Whitelist entry {entry_id} added.")
        else:
            entries = asyncio.run(store.list_whitelist())
            if not entries:
                print("  Whitelist is empty.")
            for e in entries:
                kind, value = ("email", e.email) if e.email else ("domain", e.domain)
                print(f"  {e.id:>4}  {kind:<6}  {value}  ({e.created_at})")
    finally:
        store.close()


if __name__ == "__main__":
    main()
