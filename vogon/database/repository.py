"""Repository: user, account and transaction storage on the ordered KV store.

All methods take/return dataclass instances from models.py. Every public
method runs in its own store scope; when called inside another scope on
the same thread it joins that scope's transaction, so callers can compose
several operations atomically (see backup.restore).

Account balances are derived state: every transaction write applies the
per-account deltas in the same store transaction as the record itself.
"""

from __future__ import annotations

import logging
import uuid as uuidlib
from collections.abc import Callable
from pathlib import Path

import bcrypt

from vogon.errors import (
    CodecError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UserAlreadyExistsError,
)
from vogon.database import codec, keys
from vogon.database.models import (
    Account,
    GetTransactionOptions,
    Transaction,
    TransactionComponent,
    TransactionFilterOptions,
    User,
)
from vogon.database.store import CancellationToken, Store, Txn

logger = logging.getLogger(__name__)

# bcrypt only hashes the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


def sort_transactions_desc(transactions: list[Transaction]) -> None:
    """Most recent first: date descending, then id descending."""
    transactions.sort(key=lambda t: (t.date, t.id), reverse=True)


class Repository:
    def __init__(self, db_path: str | Path = ":memory:",
                 bcrypt_rounds: int | None = None):
        self.db_path = str(db_path)
        self.bcrypt_rounds = bcrypt_rounds
        self.store = Store(self.db_path)

    def close(self):
        self.store.close()

    # ── Users ───────────────────────────────────────────────

    def get_user(self, username: str,
                 token: CancellationToken | None = None) -> User | None:
        """Return the user stored under username, or None."""
        key = keys.user_key(username)

        def body(txn: Txn) -> User | None:
            value = txn.get(key)
            if value is None:
                return None
            try:
                return codec.decode_user(value, username)
            except CodecError as e:
                raise CodecError(f"Cannot read user '{username}': {e}", key) from e

        return self.store.view(body, token)

    def get_all_users(self, token: CancellationToken | None = None) -> list[User]:
        def body(txn: Txn) -> list[User]:
            users = []
            for key, value in txn.prefix_iter(keys.USER_PREFIX):
                if not keys.is_user_index_key(key):
                    continue
                username = keys.decode_user_key(key)
                users.append(codec.decode_user(value, username))
            return users

        return self.store.view(body, token)

    @staticmethod
    def set_username(user: User, name: str) -> None:
        """Stage a new username; SaveUser makes it effective.

        Raises:
            InvalidInputError: If the trimmed name is empty or contains '/'.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Cannot set username to an empty string")
        if keys.SEPARATOR in name:
            raise InvalidInputError(f"Username cannot contain '{keys.SEPARATOR}'")
        user.new_username = name

    def set_password(self, user: User, password: str) -> None:
        raw = password.encode("utf-8")
        if len(raw) > MAX_PASSWORD_BYTES:
            raise InvalidInputError(f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")
        salt = bcrypt.gensalt(self.bcrypt_rounds) if self.bcrypt_rounds else bcrypt.gensalt()
        user.password_hash = bcrypt.hashpw(raw, salt).decode("ascii")

    @staticmethod
    def validate_password(user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("ascii"))
        except ValueError:
            logger.warning("Stored password hash for '%s' is invalid", user.username)
            return False

    def save_user(self, user: User, token: CancellationToken | None = None) -> None:
        """Create or update a user, applying a staged rename.

        An empty user.username means "create": a fresh uuid is generated and
        user.new_username must be free. Otherwise the record is rewritten
        under new_username (or the current username if none is staged).

        Raises:
            InvalidInputError: Creating a user without a staged username.
            UserAlreadyExistsError: The target username belongs to another user.
            ConflictError: The stored record for this username has a different uuid.
        """
        if not user.username:
            self._create_user(user, token)
        else:
            self._update_user(user, token)

    def _create_user(self, user: User, token: CancellationToken | None) -> None:
        if not user.new_username:
            raise InvalidInputError("Cannot create a user without a username")
        key = keys.user_key(user.new_username)
        new_uuid = str(uuidlib.uuid4())

        def body(txn: Txn) -> None:
            if txn.has(key):
                raise UserAlreadyExistsError(user.new_username)
            saved = User(username=user.new_username, uuid=new_uuid,
                         password_hash=user.password_hash)
            txn.put(key, codec.encode_user(saved))

        self.store.update(body, token)
        logger.info("Created user %s", user.new_username)
        user.uuid = new_uuid
        user.username = user.new_username
        user.new_username = ""

    def _update_user(self, user: User, token: CancellationToken | None) -> None:
        target = user.new_username or user.username
        old_key = keys.user_key(user.username)
        new_key = keys.user_key(target)

        def body(txn: Txn) -> None:
            existing = txn.get(new_key)
            if existing is not None:
                existing_user = codec.decode_user(existing, target)
                if existing_user.uuid != user.uuid:
                    if target != user.username:
                        raise UserAlreadyExistsError(target)
                    raise ConflictError(
                        f"User '{target}' is stored with a different uuid"
                    )
            txn.put(new_key, codec.encode_user(user))
            if target != user.username:
                previous = txn.get(old_key)
                if previous is not None:
                    if codec.decode_user(previous, user.username).uuid != user.uuid:
                        raise ConflictError(
                            f"User '{user.username}' is stored with a different uuid"
                        )
                    txn.delete(old_key)

        self.store.update(body, token)
        if target != user.username:
            logger.info("Renamed user %s to %s", user.username, target)
        user.username = target
        user.new_username = ""

    def create_user(self, username: str, password: str | None = None,
                    token: CancellationToken | None = None) -> User:
        """Register a new user in one call: stage name, hash password, save."""
        user = User()
        self.set_username(user, username)
        if password is not None:
            self.set_password(user, password)
        self.save_user(user, token)
        return user

    # ── Accounts ────────────────────────────────────────────

    @staticmethod
    def _owner(user: User) -> str:
        if not user.uuid:
            raise InvalidInputError(f"User '{user.username}' has no uuid; save it first")
        return user.uuid

    def create_account(self, user: User, account: Account,
                       token: CancellationToken | None = None) -> None:
        """Assign a new id to account, reset its balance and store it."""
        owner = self._owner(user)

        def body(txn: Txn) -> None:
            account.id = txn.next_sequence(keys.account_sequence_key(owner))
            account.balance = 0
            txn.put(keys.account_key(owner, account.id), codec.encode_account(account))

        self.store.update(body, token)

    def update_account(self, user: User, account: Account,
                       token: CancellationToken | None = None) -> None:
        """Update account fields; the stored balance is always preserved."""
        owner = self._owner(user)
        key = keys.account_key(owner, account.id)

        def body(txn: Txn) -> None:
            previous_value = txn.get(key)
            if previous_value is None:
                raise NotFoundError(f"Cannot update account {account.id} if it doesn't exist")
            previous = codec.decode_account(previous_value)
            account.balance = previous.balance
            value = codec.encode_account(account)
            if value == previous_value:
                logger.debug("Account %d is unchanged", account.id)
                return
            txn.put(key, value)

        self.store.update(body, token)

    def get_account(self, user: User, account_id: int,
                    token: CancellationToken | None = None) -> Account:
        key = keys.account_key(self._owner(user), account_id)

        def body(txn: Txn) -> Account:
            value = txn.get(key)
            if value is None:
                raise NotFoundError(f"Account {account_id} not found")
            try:
                return codec.decode_account(value)
            except CodecError as e:
                raise CodecError(f"Failed to decode account {account_id}: {e}", key) from e

        return self.store.view(body, token)

    def get_accounts(self, user: User,
                     token: CancellationToken | None = None) -> list[Account]:
        """All accounts in ascending id order; undecodable records are skipped."""
        prefix = keys.account_prefix(self._owner(user))

        def body(txn: Txn) -> list[Account]:
            accounts = []
            for key, value in txn.prefix_iter(prefix):
                try:
                    accounts.append(codec.decode_account(value))
                except CodecError as e:
                    logger.warning("Skipping undecodable account %r: %s", key, e)
            return accounts

        return self.store.view(body, token)

    def delete_account(self, user: User, account_id: int,
                       token: CancellationToken | None = None) -> None:
        """Delete an account; transactions referencing it are left as they are."""
        key = keys.account_key(self._owner(user), account_id)

        def body(txn: Txn) -> None:
            if not txn.has(key):
                raise NotFoundError(f"Cannot delete account {account_id} if it doesn't exist")
            txn.delete(key)

        self.store.update(body, token)

    def _update_account_balance(self, txn: Txn, owner: str,
                                account_id: int, delta: int) -> None:
        if delta == 0:
            return
        key = keys.account_key(owner, account_id)
        value = txn.get(key)
        if value is None:
            logger.warning(
                "Account %d doesn't exist, balance change of %d not applied",
                account_id, delta,
            )
            return
        account = codec.decode_account(value)
        account.balance += delta
        txn.put(key, codec.encode_account(account))

    def _update_accounts_balance(
        self, txn: Txn, owner: str,
        previous: list[TransactionComponent] | None,
        new: list[TransactionComponent] | None,
    ) -> None:
        deltas: dict[int, int] = {}
        for component in previous or []:
            deltas[component.account_id] = deltas.get(component.account_id, 0) - component.amount
        for component in new or []:
            deltas[component.account_id] = deltas.get(component.account_id, 0) + component.amount
        for account_id, delta in deltas.items():
            self._update_account_balance(txn, owner, account_id, delta)

    # ── Transactions ────────────────────────────────────────

    def create_transaction(self, user: User, transaction: Transaction,
                           token: CancellationToken | None = None) -> None:
        """Normalize, assign an id, apply balances and store the transaction.

        Raises:
            InvalidInputError: If the transaction date cannot be parsed.
        """
        owner = self._owner(user)
        transaction.normalize()

        def body(txn: Txn) -> None:
            transaction.id = txn.next_sequence(keys.transaction_sequence_key(owner))
            self._update_accounts_balance(txn, owner, None, transaction.components)
            txn.put(
                keys.transaction_key(owner, transaction.id),
                codec.encode_transaction(transaction),
            )

        self.store.update(body, token)

    def update_transaction(self, user: User, transaction: Transaction,
                           token: CancellationToken | None = None) -> None:
        owner = self._owner(user)
        transaction.normalize()
        key = keys.transaction_key(owner, transaction.id)

        def body(txn: Txn) -> None:
            previous_value = txn.get(key)
            if previous_value is None:
                raise NotFoundError(
                    f"Cannot update transaction {transaction.id} if it doesn't exist"
                )
            previous = codec.decode_transaction(previous_value)
            self._update_accounts_balance(
                txn, owner, previous.components, transaction.components
            )
            value = codec.encode_transaction(transaction)
            if value == previous_value:
                logger.debug("Transaction %d is unchanged", transaction.id)
                return
            txn.put(key, value)

        self.store.update(body, token)

    def delete_transaction(self, user: User, transaction_id: int,
                           token: CancellationToken | None = None) -> None:
        """Delete a transaction and reverse its effect on account balances."""
        owner = self._owner(user)
        key = keys.transaction_key(owner, transaction_id)

        def body(txn: Txn) -> None:
            value = txn.get(key)
            if value is None:
                raise NotFoundError(
                    f"Cannot delete transaction {transaction_id} because it doesn't exist"
                )
            previous = codec.decode_transaction(value)
            self._update_accounts_balance(txn, owner, previous.components, None)
            txn.delete(key)

        self.store.update(body, token)

    def get_transaction(self, user: User, transaction_id: int,
                        token: CancellationToken | None = None) -> Transaction:
        key = keys.transaction_key(self._owner(user), transaction_id)

        def body(txn: Txn) -> Transaction:
            value = txn.get(key)
            if value is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            return self._decode_transaction(key, value)

        return self.store.view(body, token)

    @staticmethod
    def _decode_transaction(key: bytes, value: bytes) -> Transaction:
        try:
            return codec.decode_transaction(value)
        except CodecError as e:
            logger.error("Failed to decode transaction %r: %s", key, e)
            raise CodecError(f"Failed to decode transaction: {e}", key) from e

    def _scan_transactions(self, txn: Txn, owner: str) -> list[Transaction]:
        """All transactions in ascending id order; a bad record aborts the scan."""
        return [
            self._decode_transaction(key, value)
            for key, value in txn.prefix_iter(keys.transaction_prefix(owner))
        ]

    def _filtered_transactions(self, user: User, options: TransactionFilterOptions,
                               token: CancellationToken | None) -> list[Transaction]:
        owner = self._owner(user)
        transactions = self.store.view(lambda txn: self._scan_transactions(txn, owner), token)
        if not options.is_empty():
            transactions = [t for t in transactions if options.matches(t)]
        return transactions

    def get_transactions(self, user: User,
                         options: GetTransactionOptions | None = None,
                         token: CancellationToken | None = None) -> list[Transaction]:
        """Filtered transactions, most recent first, sliced by offset/limit.

        Raises:
            InvalidInputError: If offset or limit is negative.
        """
        options = options or GetTransactionOptions()
        if options.offset < 0 or options.limit < 0:
            raise InvalidInputError(
                f"Offset and limit must not be negative (offset={options.offset},"
                f" limit={options.limit})"
            )
        transactions = self._filtered_transactions(user, options.filter, token)
        sort_transactions_desc(transactions)
        end = options.offset + options.limit if options.limit else None
        return transactions[options.offset:end]

    def count_transactions(self, user: User,
                           options: TransactionFilterOptions | None = None,
                           token: CancellationToken | None = None) -> int:
        """Number of transactions matching options, ignoring paging."""
        options = options or TransactionFilterOptions()
        if options.is_empty():
            prefix = keys.transaction_prefix(self._owner(user))
            return self.store.view(
                lambda txn: sum(1 for _ in txn.prefix_iter(prefix)), token
            )
        return len(self._filtered_transactions(user, options, token))

    def get_tags(self, user: User,
                 token: CancellationToken | None = None) -> list[str]:
        """Deduplicated tags across all transactions; order is not significant."""
        tags: set[str] = set()
        for transaction in self._filtered_transactions(user, TransactionFilterOptions(), token):
            tags.update(transaction.tags)
        return list(tags)

    # ── Server config ───────────────────────────────────────

    def get_or_create_config_variable(
        self, name: str, generator: Callable[[], str],
        token: CancellationToken | None = None,
    ) -> str:
        """Return the stored value, generating and saving it if absent.

        The generator runs at most once per stored value, inside the same
        update scope as the write. An empty generated value is not saved.
        """
        key = keys.server_config_key(name)

        def body(txn: Txn) -> str:
            value = txn.get(key)
            if value is not None:
                return value.decode("utf-8")
            generated = generator()
            if not generated:
                return ""
            txn.put(key, generated.encode("utf-8"))
            return generated

        return self.store.update(body, token)

    def set_config_variable(self, name: str, value: str,
                            token: CancellationToken | None = None) -> None:
        key = keys.server_config_key(name)
        self.store.update(lambda txn: txn.put(key, value.encode("utf-8")), token)

    def get_all_config_variables(
        self, token: CancellationToken | None = None,
    ) -> dict[str, str]:
        def body(txn: Txn) -> dict[str, str]:
            return {
                keys.decode_server_config_key(key): value.decode("utf-8")
                for key, value in txn.prefix_iter(keys.SERVER_CONFIG_PREFIX)
            }

        return self.store.view(body, token)
