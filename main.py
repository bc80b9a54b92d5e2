#!/usr/bin/env python3
"""
AccessGate -- operator CLI for service API keys and administrative accounts.

This is the one place key material and generated passwords become visible to
a human: they are printed to stdout once and never logged.

Usage:
  python main.py issue-key svc-verification --scope read --scope write
  python main.py rotate-key svc-verification
  python main.py deactivate-key svc-verification
  python main.py list-keys --all
  python main.py provision ops@example.com --role super_admin --generate
  python main.py rotate-password ops@example.com --password-env NEW_ADMIN_PASSWORD
  python main.py set-status manager@example.com suspended
  python main.py set-active manager@example.com false
  python main.py login-status manager@example.com

Environment variables:
  SECRET_KEY     Required unless DEBUG=true. Keys API key digests.
  DATABASE_URL   Optional SQLAlchemy URL. Defaults to auth/accessgate.db.
"""

import argparse
import getpass
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.accounts import login_status, provision_account, rotate_password, set_active, set_status
from auth.credentials import generate_password
from auth.models import Role, Scope
from auth.registry import ApiKeyRegistry
from auth.store import AuthStore
from core.errors import AccessGateError

logger = logging.getLogger("accessgate.cli")


def _resolve_password(args: argparse.Namespace) -> tuple[str, bool]:
    """Return (password, generated). Never takes a password from argv."""
    if args.generate:
        return generate_password(), True
    if args.password_env:
        value = os.environ.get(args.password_env, "")
        if not value:
            raise SystemExit(f"  [!] Environment variable {args.password_env} is empty or unset.")
        return value, False
    first = getpass.getpass("  New password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first, False


def _print_material(label: str, material: str) -> None:
    print()
    print(f"  {label}:")
    print()
    print(f"  {material}")
    print()
    print("  This value is shown once and cannot be recovered. Store it now.")
    print()


# ---------------------------------------------------------------------------
# Key commands
# ---------------------------------------------------------------------------


def cmd_issue_key(store: AuthStore, args: argparse.Namespace) -> int:
    registry = ApiKeyRegistry(store)
    expires_at: Optional[datetime] = None
    if args.expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)
    issued = registry.issue(args.name, args.scope or [], rotate_existing=args.rotate_existing, expires_at=expires_at)
    scopes = ",".join(sorted(s.value for s in issued.record.permissions))
    print(f"  Key '{issued.record.name}' active with scopes: {scopes}")
    _print_material("API key", issued.material)
    return 0


def cmd_rotate_key(store: AuthStore, args: argparse.Namespace) -> int:
    issued = ApiKeyRegistry(store).rotate(args.name)
    print(f"  Key '{issued.record.name}' rotated. The previous value no longer authorizes.")
    _print_material("New API key", issued.material)
    return 0


def cmd_deactivate_key(store: AuthStore, args: argparse.Namespace) -> int:
    record = ApiKeyRegistry(store).deactivate(args.name)
    print(f"  Key '{record.name}' ({record.key_prefix}...) deactivated.")
    return 0


def cmd_list_keys(store: AuthStore, args: argparse.Namespace) -> int:
    keys = ApiKeyRegistry(store).list_keys(include_inactive=args.all)
    if not keys:
        print("  No keys.")
        return 0
    print(f"  {'NAME':<28} {'PREFIX':<14} {'SCOPES':<18} {'STATE':<8} LAST USED")
    for k in keys:
        scopes = ",".join(sorted(s.value for s in k.permissions))
        state = "active" if k.is_active else "inactive"
        print(f"  {k.name:<28} {k.key_prefix:<14} {scopes:<18} {state:<8} {k.last_used or '-'}")
    return 0


# ---------------------------------------------------------------------------
# Account commands
# ---------------------------------------------------------------------------


def cmd_provision(store: AuthStore, args: argparse.Namespace) -> int:
    password, generated = _resolve_password(args)
    result = provision_account(
        store,
        args.email,
        password,
        role=args.role,
        name=args.name,
        update_role=args.update_role,
    )
    action = "Created" if result.created else "Updated password for"
    print(f"  {action} {result.account.email} (role={result.account.role}, status={result.account.status})")
    print("  Stored digest re-verified against the new password.")
    if generated:
        _print_material("Generated password", password)
    return 0


def cmd_rotate_password(store: AuthStore, args: argparse.Namespace) -> int:
    password, generated = _resolve_password(args)
    account = rotate_password(store, args.email, password)
    print(f"  Password rotated for {account.email}. Stored digest re-verified.")
    if generated:
        _print_material("Generated password", password)
    return 0


def cmd_set_status(store: AuthStore, args: argparse.Namespace) -> int:
    account = set_status(store, args.email, args.status)
    print(f"  {account.email}: status={account.status}")
    return 0


def cmd_set_active(store: AuthStore, args: argparse.Namespace) -> int:
    account = set_active(store, args.email, args.active == "true")
    print(f"  {account.email}: is_active={account.is_active}")
    return 0


def cmd_login_status(store: AuthStore, args: argparse.Namespace) -> int:
    account, decision = login_status(store, args.email)
    print(f"  {account.email} (role={account.role})")
    print(f"    is_active: {account.is_active}")
    print(f"    status:    {account.status}")
    if decision.allowed:
        print("    ALLOWED: account can log in")
        return 0
    if decision.detail:
        print(f"    BLOCKED: {decision.reason.value} ({decision.detail})")
    else:
        print(f"    BLOCKED: {decision.reason.value}")
    return 2


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_password_source(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--password-env",
        metavar="VAR",
        help="Read the password from this environment variable instead of prompting",
    )
    source.add_argument(
        "--generate",
        action="store_true",
        help="Generate a random password and print it once",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accessgate",
        description="Operator CLI for service API keys and administrative accounts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db-url", metavar="URL", help="SQLAlchemy database URL (overrides DATABASE_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log kernel activity to stderr")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("issue-key", help="Issue a new service API key")
    p.add_argument("name", help="Unique label for the calling service")
    p.add_argument(
        "--scope",
        action="append",
        choices=[s.value for s in Scope],
        help="Scope to grant; repeat for several (read, write, admin)",
    )
    p.add_argument("--rotate-existing", action="store_true", help="Rotate instead of failing if the name is taken")
    p.add_argument("--expires-in-days", type=int, metavar="DAYS", help="Expire the key after DAYS days")
    p.set_defaults(func=cmd_issue_key)

    p = sub.add_parser("rotate-key", help="Replace the material of an active key")
    p.add_argument("name")
    p.set_defaults(func=cmd_rotate_key)

    p = sub.add_parser("deactivate-key", help="Permanently deactivate a key")
    p.add_argument("name")
    p.set_defaults(func=cmd_deactivate_key)

    p = sub.add_parser("list-keys", help="List key records (never material)")
    p.add_argument("--all", action="store_true", help="Include deactivated keys")
    p.set_defaults(func=cmd_list_keys)

    p = sub.add_parser("provision", help="Create an account or rotate its password")
    p.add_argument("email")
    p.add_argument("--role", choices=[r.value for r in Role], default=Role.admin.value)
    p.add_argument("--name", help="Display name (create only, or rename on update)")
    p.add_argument("--update-role", action="store_true", help="Apply --role to an existing account")
    _add_password_source(p)
    p.set_defaults(func=cmd_provision)

    p = sub.add_parser("rotate-password", help="Rotate the password of an existing account")
    p.add_argument("email")
    _add_password_source(p)
    p.set_defaults(func=cmd_rotate_password)

    p = sub.add_parser("set-status", help="Set an account's lifecycle status")
    p.add_argument("email")
    p.add_argument("status", help="active, suspended, pending, deleted, ...")
    p.set_defaults(func=cmd_set_status)

    p = sub.add_parser("set-active", help="Flip an account's activation flag")
    p.add_argument("email")
    p.add_argument("active", choices=["true", "false"])
    p.set_defaults(func=cmd_set_active)

    p = sub.add_parser("login-status", help="Report whether an account may log in")
    p.add_argument("email")
    p.set_defaults(func=cmd_login_status)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    store = AuthStore(db_url=args.db_url)
    try:
        return args.func(store, args)
    except (AccessGateError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {type(exc).__name__}: {exc}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
