#!/usr/bin/env python3
"""
realmauth — administer users and roles of a schema-mapped auth realm.

Usage:
  python main.py authenticate dave --password beer
  python main.py roles dave
  python main.py details dave
  python main.py create-user alice --password s3cret --role BeerDrinker --set name="Alice Smith"
  python main.py set-password alice --password n3w
  python main.py set-roles bob CiderDrinker Motorcyclist
  python main.py set-code bob 8f3a...
  python main.py by-code 8f3a...
  python main.py expired alice

Environment variables (see core/config.py):
  DATABASE_URL          SQLAlchemy URL of the user database (default: ./realmauth.db)
  REALM_SETTINGS_FILE   JSON file with {"realms": {"<name>": {...}}} (default: all defaults)
  REALM_NAME            Realm to load from that file (default: users)
  LOG_LEVEL / DEBUG     Logging verbosity

Exit status: 0 on success, 1 when the user/code does not exist or a check
fails, 2 on configuration or data store errors.
"""

import argparse
import getpass
import json
import logging
import sys
from typing import Optional

from auth.models import NotFound
from auth.provider import SchemaAuthProvider
from core.config import get_settings
from core.errors import RealmAuthError
from datastore.store import SqlSchema
from realm.config import load_realm_settings

logger = logging.getLogger("realmauth.cli")

_DEFAULT_ROLES_KEY = "roles"


def _parse_assignments(pairs: list[str]) -> dict[str, str]:
    """Turn ["name=Alice", "email=a@x"] into a dict. Rejects items without '='."""
    fields: dict[str, str] = {}
    for pair in pairs:
        column, sep, value = pair.partition("=")
        if not sep or not column.strip():
            raise argparse.ArgumentTypeError(f"Expected COLUMN=VALUE, got {pair!r}")
        fields[column.strip()] = value
    return fields


def _password(args: argparse.Namespace) -> str:
    return args.password if args.password is not None else getpass.getpass("Password: ")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def build_provider(db_url: Optional[str], realm_file: Optional[str], realm_name: Optional[str]) -> SchemaAuthProvider:
    """Build a provider from CLI overrides falling back to the environment settings."""
    settings = get_settings()
    realm_file = realm_file if realm_file is not None else settings.realm_settings_file
    realm_name = realm_name or settings.realm_name
    realm_settings = load_realm_settings(realm_file, realm_name) if realm_file else {}
    # The CLI reads and writes roles through the roles mapping.
    realm_settings.setdefault("roles_key", _DEFAULT_ROLES_KEY)
    schema = SqlSchema(db_url or settings.database_url, reflect=settings.reflect_schema)
    return SchemaAuthProvider(realm_settings, schema)


def _run(provider: SchemaAuthProvider, args: argparse.Namespace) -> int:
    roles_key = provider.config.roles_key

    if args.command == "authenticate":
        if provider.authenticate_user(args.username, _password(args)):
            print(f"  {args.username}: authenticated.")
            return 0
        print(f"  [!] {args.username}: authentication failed.")
        return 1

    if args.command == "roles":
        roles = provider.get_user_roles(args.username)
        if isinstance(roles, NotFound):
            print(f"  [!] No such user '{args.username}'.")
            return 1
        for role in roles:
            print(role)
        return 0

    if args.command == "details":
        details = provider.get_user_details(args.username)
        if details is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        details.pop(provider.config.users_password_column, None)
        _print_json(details)
        return 0

    if args.command == "create-user":
        fields = _parse_assignments(args.set)
        fields["username"] = args.username
        if args.role:
            fields[roles_key] = {role: True for role in args.role}
        if provider.create_user(fields) is None:
            print(f"  [!] '{args.username}' was created but does not satisfy the realm's valid-user conditions.")
            return 1
        if args.password is not None:
            provider.set_user_password(args.username, args.password)
        print(f"  Created user '{args.username}'.")
        return 0

    if args.command == "set-password":
        if provider.set_user_password(args.username, _password(args)) is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        print(f"  Password updated for '{args.username}'.")
        return 0

    if args.command == "set-roles":
        updated = provider.set_user_details(args.username, {roles_key: {role: True for role in args.roles}})
        if updated is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        print(f"  {args.username}: {', '.join(sorted(updated[roles_key])) or '(no roles)'}")
        return 0

    if args.command == "set-code":
        if provider.set_user_details(args.username, {"pw_reset_code": args.code or None}) is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        print(f"  Reset code {'set' if args.code else 'cleared'} for '{args.username}'.")
        return 0

    if args.command == "by-code":
        username = provider.get_user_by_code(args.code)
        if username is None:
            print("  [!] No user holds that reset code.")
            return 1
        print(username)
        return 0

    if args.command == "expired":
        details = provider.get_user_details(args.username)
        if details is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        expired = provider.password_expired(details)
        print(f"  {args.username}: password {'EXPIRED' if expired else 'valid'}.")
        return 1 if expired else 0

    raise AssertionError(f"unhandled command {args.command!r}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="realmauth",
        description="Administer users and roles of a schema-mapped authentication realm.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py authenticate dave --password beer
  python main.py --db sqlite:///app.db --realm-file realms.json --realm staff roles dave
  python main.py set-roles bob CiderDrinker Motorcyclist
        """,
    )
    parser.add_argument("--db", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL)")
    parser.add_argument("--realm-file", metavar="PATH", help="JSON realm settings file (default: REALM_SETTINGS_FILE)")
    parser.add_argument("--realm", metavar="NAME", help="Realm name inside the settings file (default: REALM_NAME)")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("authenticate", help="Check a username/password pair")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted when omitted)")

    p = sub.add_parser("roles", help="List a user's roles")
    p.add_argument("username")

    p = sub.add_parser("details", help="Show a user's row as JSON (password column omitted)")
    p.add_argument("username")

    p = sub.add_parser("create-user", help="Create a user")
    p.add_argument("username")
    p.add_argument("--password", help="Initial password, hashed with the realm's algorithm")
    p.add_argument("--role", action="append", default=[], metavar="ROLE", help="Role to grant (repeatable)")
    p.add_argument("--set", action="append", default=[], metavar="COLUMN=VALUE", help="Extra column value (repeatable)")

    p = sub.add_parser("set-password", help="Set a user's password")
    p.add_argument("username")
    p.add_argument("--password", help="New password (prompted when omitted)")

    p = sub.add_parser("set-roles", help="Replace a user's roles with exactly the given set")
    p.add_argument("username")
    p.add_argument("roles", nargs="*", metavar="ROLE")

    p = sub.add_parser("set-code", help="Set (or with no code, clear) a user's password reset code")
    p.add_argument("username")
    p.add_argument("code", nargs="?", default="")

    p = sub.add_parser("by-code", help="Find the user holding a password reset code")
    p.add_argument("code")

    p = sub.add_parser("expired", help="Check whether a user's password has expired")
    p.add_argument("username")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "create-user":
            _parse_assignments(args.set)
        provider = build_provider(args.db, args.realm_file, args.realm)
        return _run(provider, args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except RealmAuthError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {exc.kind} error: {exc}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
