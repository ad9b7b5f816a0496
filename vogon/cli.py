"""CLI entry point for Vogon.

Commands:
    vogon users                        List registered users
    vogon adduser USER                 Register a user (prompts for password)
    vogon passwd USER                  Change a user's password
    vogon rename USER NEW_NAME         Rename a user
    vogon accounts USER                List accounts with balances
    vogon transactions USER [FILTERS]  List transactions, most recent first
    vogon tags USER                    List tags in use
    vogon report USER [FILTERS]        Print balance and tags charts as JSON
    vogon backup USER [--output FILE]  Write a JSON backup
    vogon restore USER FILE            Replace a user's data from a backup
    vogon config list                  Print server config variables
    vogon config set NAME VALUE        Set a server config variable
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path

from vogon.errors import VogonError

logger = logging.getLogger(__name__)


def _setup_logging(config=None) -> None:
    """Configure logging from VOGON_LOG_LEVEL or the config file."""
    level = config.log_level if config is not None else "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config."""
    from vogon.config import Config

    return Config()


def _get_repo(config=None):
    """Create a Repository connected to the configured database."""
    from vogon.database.repository import Repository

    config = config or _get_config()
    config.database_dir.mkdir(parents=True, exist_ok=True)
    return Repository(db_path=config.database_path, bcrypt_rounds=config.bcrypt_rounds)


def _load_user(repo, username: str):
    user = repo.get_user(username)
    if user is None:
        print(f"Error: User '{username}' not found.")
    return user


def _read_new_password() -> str | None:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Error: Passwords do not match.")
        return None
    if not password:
        print("Error: Password cannot be empty.")
        return None
    return password


def _filter_options(args: argparse.Namespace):
    from vogon.database.models import TransactionFilterOptions

    return TransactionFilterOptions(
        filter_description=args.description or "",
        filter_from_date=args.from_date or "",
        filter_to_date=args.to_date or "",
        filter_tags=args.tag or [],
        filter_accounts=args.account or [],
        exclude_expense_income=args.exclude_expense_income,
        exclude_transfer=args.exclude_transfer,
    )


# ── Command handlers ─────────────────────────────────────


def cmd_users(args: argparse.Namespace) -> int:
    """Print all usernames with their uuids."""
    repo = _get_repo()
    try:
        users = repo.get_all_users()
    finally:
        repo.close()
    for user in users:
        print(f"  {user.username:<24}  {user.uuid}")
    if not users:
        print("No users registered.")
    return 0


def cmd_adduser(args: argparse.Namespace) -> int:
    password = _read_new_password()
    if password is None:
        return 1
    repo = _get_repo()
    try:
        user = repo.create_user(args.username, password)
    finally:
        repo.close()
    print(f"Created user '{user.username}' ({user.uuid}).")
    return 0


def cmd_passwd(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        password = _read_new_password()
        if password is None:
            return 1
        repo.set_password(user, password)
        repo.save_user(user)
    finally:
        repo.close()
    print(f"Password changed for '{user.username}'.")
    return 0


def cmd_rename(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        repo.set_username(user, args.new_username)
        repo.save_user(user)
    finally:
        repo.close()
    print(f"Renamed '{args.username}' to '{user.username}'.")
    return 0


def cmd_accounts(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        accounts = repo.get_accounts(user)
    finally:
        repo.close()

    for account in accounts:
        flags = []
        if account.include_in_total:
            flags.append("total")
        if account.show_in_list:
            flags.append("list")
        print(
            f"  {account.id:>5}  {account.name:<30}"
            f"  {account.balance:>14,} {account.currency:<4}"
            f"  {','.join(flags)}"
        )
    return 0


def cmd_transactions(args: argparse.Namespace) -> int:
    from vogon.database.models import GetTransactionOptions

    options = GetTransactionOptions(
        offset=args.offset, limit=args.limit, filter=_filter_options(args),
    )
    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        transactions = repo.get_transactions(user, options)
        total = repo.count_transactions(user, options.filter)
    finally:
        repo.close()

    for t in transactions:
        amounts = " ".join(f"{c.amount:+,}@{c.account_id}" for c in t.components)
        print(f"  {t.id:>6}  {t.date}  {t.description[:40]:<40}  [{','.join(t.tags)}]  {amounts}")
    print(f"\n  Showing {len(transactions)} of {total} transactions")
    return 0


def cmd_tags(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        tags = repo.get_tags(user)
    finally:
        repo.close()
    for tag in sorted(tags):
        print(tag)
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    from vogon.database.queries import get_report

    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        report = get_report(repo, user, _filter_options(args))
    finally:
        repo.close()
    print(report.to_json())
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    from vogon.database.backup import backup

    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        data = backup(repo, user)
    finally:
        repo.close()

    if args.output:
        args.output.write_text(data, encoding="utf-8")
        print(f"Backup of '{args.username}' written to {args.output}.")
    else:
        print(data)
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    from vogon.database.backup import restore

    if not args.file.exists():
        print(f"Error: File not found: {args.file}")
        return 1
    data = args.file.read_text(encoding="utf-8")

    repo = _get_repo()
    try:
        user = _load_user(repo, args.username)
        if user is None:
            return 1
        restore(repo, user, data)
    finally:
        repo.close()
    print(f"Restored '{args.username}' from {args.file}.")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.config_command is None:
        print("Usage: vogon config {list,set}")
        return 1

    repo = _get_repo()
    try:
        if args.config_command == "list":
            for name, value in sorted(repo.get_all_config_variables().items()):
                print(f"  {name} = {value}")
        elif args.config_command == "set":
            repo.set_config_variable(args.name, args.value)
            print(f"Set '{args.name}'.")
    finally:
        repo.close()
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "users": cmd_users,
    "adduser": cmd_adduser,
    "passwd": cmd_passwd,
    "rename": cmd_rename,
    "accounts": cmd_accounts,
    "transactions": cmd_transactions,
    "tags": cmd_tags,
    "report": cmd_report,
    "backup": cmd_backup,
    "restore": cmd_restore,
    "config": cmd_config,
}


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {number}")
    return number


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", help="Case-insensitive description substring")
    parser.add_argument("--from", dest="from_date", help="First date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="to_date", help="Last date (YYYY-MM-DD)")
    parser.add_argument("--tag", action="append", help="Match any of these tags (repeatable)")
    parser.add_argument("--account", type=int, action="append",
                        help="Match any of these account ids (repeatable)")
    parser.add_argument("--exclude-expense-income", action="store_true",
                        help="Skip expense/income transactions")
    parser.add_argument("--exclude-transfer", action="store_true",
                        help="Skip transfer transactions")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="vogon",
        description="Vogon personal finance ledger",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("users", help="List registered users")

    adduser_p = subparsers.add_parser("adduser", help="Register a new user")
    adduser_p.add_argument("username", help="Username for the new user")

    passwd_p = subparsers.add_parser("passwd", help="Change a user's password")
    passwd_p.add_argument("username")

    rename_p = subparsers.add_parser("rename", help="Rename a user")
    rename_p.add_argument("username", help="Current username")
    rename_p.add_argument("new_username", help="New username")

    accounts_p = subparsers.add_parser("accounts", help="List accounts with balances")
    accounts_p.add_argument("username")

    txn_p = subparsers.add_parser("transactions", help="List transactions")
    txn_p.add_argument("username")
    txn_p.add_argument("--offset", type=_non_negative_int, default=0,
                       help="Skip this many transactions")
    txn_p.add_argument("--limit", type=_non_negative_int, default=0,
                       help="Maximum to show (0 = all)")
    _add_filter_arguments(txn_p)

    tags_p = subparsers.add_parser("tags", help="List tags in use")
    tags_p.add_argument("username")

    report_p = subparsers.add_parser("report", help="Print balance and tags charts")
    report_p.add_argument("username")
    _add_filter_arguments(report_p)

    backup_p = subparsers.add_parser("backup", help="Write a JSON backup")
    backup_p.add_argument("username")
    backup_p.add_argument("--output", type=Path, help="Output file (default: stdout)")

    restore_p = subparsers.add_parser("restore", help="Replace a user's data from a backup")
    restore_p.add_argument("username")
    restore_p.add_argument("file", type=Path, help="Backup JSON file")

    config_p = subparsers.add_parser("config", help="Manage server config variables")
    config_sub = config_p.add_subparsers(dest="config_command")
    config_sub.add_parser("list", help="Print all config variables")
    config_set_p = config_sub.add_parser("set", help="Set a config variable")
    config_set_p.add_argument("name")
    config_set_p.add_argument("value")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    _setup_logging(_get_config())
    try:
        code = handler(args)
    except VogonError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
