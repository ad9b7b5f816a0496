"""Backup and restore of a user's accounts and transactions.

The backup is a two-space indented JSON document:

    {"Accounts": [...], "Transactions": [...]}

Accounts are listed in ascending id order, transactions most recent first
(date descending, then id descending).

Restore replaces the user's whole subspace inside one update scope, so a
failure leaves the previous data untouched. Ids from the document are not
reused: accounts get fresh ids in document order and component AccountIDs
are remapped to them. Transactions are created from the oldest (last in
the document) to the newest, which keeps their relative id order stable
across backup/restore cycles.
"""

from __future__ import annotations

import logging

from vogon.errors import InvalidInputError
from vogon.database import codec, keys
from vogon.database.models import Account, GetTransactionOptions, Transaction, User
from vogon.database.repository import Repository
from vogon.database.store import CancellationToken, Txn

logger = logging.getLogger(__name__)


def backup(repo: Repository, user: User,
           token: CancellationToken | None = None) -> str:
    """Serialize all accounts and transactions of user to JSON."""

    def body(txn: Txn) -> tuple[list[Account], list[Transaction]]:
        accounts = repo.get_accounts(user, token=token)
        transactions = repo.get_transactions(user, GetTransactionOptions(), token=token)
        return accounts, transactions

    accounts, transactions = repo.store.view(body, token)
    return codec.dumps({
        "Accounts": [codec.account_to_dict(a) for a in accounts],
        "Transactions": [codec.transaction_to_dict(t) for t in transactions],
    })


def parse_backup(value: str) -> tuple[list[Account], list[Transaction]]:
    """Decode a backup document.

    Raises:
        InvalidInputError: If the JSON is malformed or has the wrong shape.
    """
    data = codec.loads(value)
    if not isinstance(data, dict):
        raise InvalidInputError("Backup must be a JSON object")
    fields = {k.lower(): v for k, v in data.items()}
    raw_accounts = fields.get("accounts")
    raw_transactions = fields.get("transactions")
    if raw_accounts is None:
        raw_accounts = []
    if raw_transactions is None:
        raw_transactions = []
    if not isinstance(raw_accounts, list) or not isinstance(raw_transactions, list):
        raise InvalidInputError("Backup Accounts and Transactions must be lists")
    accounts = [codec.account_from_dict(a) for a in raw_accounts]
    transactions = [codec.transaction_from_dict(t) for t in raw_transactions]
    return accounts, transactions


def restore(repo: Repository, user: User, value: str,
            token: CancellationToken | None = None) -> None:
    """Replace all data for user with the contents of a backup document."""
    accounts, transactions = parse_backup(value)
    owner = repo._owner(user)

    def body(txn: Txn) -> None:
        deleted_accounts = txn.delete_prefix(keys.account_prefix(owner))
        deleted_transactions = txn.delete_prefix(keys.transaction_prefix(owner))
        logger.debug(
            "Cleared %d accounts and %d transactions for %s",
            deleted_accounts, deleted_transactions, user.username,
        )

        account_ids: dict[int, int] = {}
        for account in accounts:
            previous_id = account.id
            account.balance = 0
            repo.create_account(user, account, token=token)
            account_ids[previous_id] = account.id

        for transaction in reversed(transactions):
            for component in transaction.components:
                if component.account_id not in account_ids:
                    raise InvalidInputError(
                        f"Transaction '{transaction.description}' references"
                        f" unknown account {component.account_id}"
                    )
                component.account_id = account_ids[component.account_id]
            repo.create_transaction(user, transaction, token=token)

    repo.store.update(body, token)
    logger.info(
        "Restored %d accounts and %d transactions for %s",
        len(accounts), len(transactions), user.username,
    )
