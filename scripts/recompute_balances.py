#!/usr/bin/env python3
"""Maintenance script: recompute account balances from transactions.

Usage:
    python -m scripts.recompute_balances USER [--fix]

Balances are maintained incrementally on every transaction write. This
script sums all transaction components per account and reports accounts
whose stored balance differs. With --fix the stored balances are
rewritten in a single update scope.
"""

import argparse
import logging
import sys

from vogon.cli import _get_config, _get_repo, _setup_logging
from vogon.database import codec, keys

logger = logging.getLogger(__name__)


def compute_balances(transactions) -> dict[int, int]:
    totals: dict[int, int] = {}
    for transaction in transactions:
        for component in transaction.components:
            totals[component.account_id] = totals.get(component.account_id, 0) + component.amount
    return totals


def find_drift(repo, user, token=None) -> list[tuple[int, str, int, int]]:
    """Accounts whose stored balance differs from the transaction sum.

    Returns (account_id, name, stored, expected) tuples in id order.
    """

    def body(txn):
        totals = compute_balances(repo.get_transactions(user, token=token))
        return [
            (account.id, account.name, account.balance, totals.get(account.id, 0))
            for account in repo.get_accounts(user, token=token)
            if account.balance != totals.get(account.id, 0)
        ]

    return repo.store.view(body, token)


def fix_balances(repo, user, token=None) -> int:
    """Rewrite drifted balances; returns the number of accounts changed."""
    owner = repo._owner(user)

    def body(txn):
        totals = compute_balances(repo.get_transactions(user, token=token))
        fixed = 0
        for account in repo.get_accounts(user, token=token):
            expected = totals.get(account.id, 0)
            if account.balance == expected:
                continue
            logger.info(
                "Account %d (%s): balance %d -> %d",
                account.id, account.name, account.balance, expected,
            )
            account.balance = expected
            txn.put(keys.account_key(owner, account.id), codec.encode_account(account))
            fixed += 1
        return fixed

    return repo.store.update(body, token)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Recompute account balances from transactions")
    parser.add_argument("username", help="User whose accounts to check")
    parser.add_argument("--fix", action="store_true", help="Write corrected balances")
    args = parser.parse_args(argv)

    config = _get_config()
    _setup_logging(config)
    repo = _get_repo(config)
    try:
        user = repo.get_user(args.username)
        if user is None:
            print(f"Error: User '{args.username}' not found.")
            return 1

        drift = find_drift(repo, user)
        if not drift:
            print("All balances match.")
            return 0

        print(f"Found {len(drift)} accounts with drifted balances")
        for account_id, name, stored, expected in drift:
            print(f"  {account_id:>5}  {name[:30]:<30}  stored {stored:>14,}  expected {expected:>14,}")

        if args.fix:
            fixed = fix_balances(repo, user)
            print(f"\nFixed {fixed} accounts.")
    finally:
        repo.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
