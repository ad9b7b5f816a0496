"""Dataclass models for the ledger keyspace.

Each dataclass corresponds to one record kind stored in the KV store.
Amounts are integers in minor units; ids are per-user unsigned integers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date as _date
from enum import IntEnum

from vogon.errors import InvalidInputError

DATE_FORMAT = "%Y-%m-%d"
_INPUT_DATE_RE = re.compile(r"([0-9]{4})-([0-9]{1,2})-([0-9]{1,2})")


class TransactionType(IntEnum):
    EXPENSE_INCOME = 0
    TRANSFER = 1


@dataclass
class User:
    username: str = ""
    uuid: str = ""
    password_hash: str = ""
    # Staged username; written by SaveUser, cleared on success.
    new_username: str = ""


@dataclass
class Account:
    id: int = 0
    name: str = ""
    balance: int = 0
    currency: str = ""
    include_in_total: bool = False
    show_in_list: bool = False


@dataclass
class TransactionComponent:
    amount: int = 0
    account_id: int = 0


@dataclass
class Transaction:
    id: int = 0
    description: str = ""
    type: int = TransactionType.EXPENSE_INCOME
    tags: list[str] = field(default_factory=list)
    date: str = ""
    components: list[TransactionComponent] = field(default_factory=list)

    def normalize(self) -> None:
        """Zero-pad the date and sort/deduplicate tags in place.

        Raises:
            InvalidInputError: If the date is not a valid YYYY-M-D calendar date.
        """
        self.date = normalize_date(self.date)
        self.tags = normalize_tags(self.tags)

    @property
    def tag_key(self) -> str:
        """Comma-joined sorted tags, used as a report dimension."""
        return ",".join(normalize_tags(self.tags))


def normalize_date(value: str) -> str:
    match = _INPUT_DATE_RE.fullmatch(value or "")
    if match is None:
        raise InvalidInputError(f"Cannot parse date '{value}'")
    year, month, day = (int(g) for g in match.groups())
    try:
        parsed = _date(year, month, day)
    except ValueError as e:
        raise InvalidInputError(f"Cannot parse date '{value}': {e}") from e
    return parsed.strftime(DATE_FORMAT)


def normalize_tags(tags: list[str] | None) -> list[str]:
    return sorted({tag for tag in tags or [] if tag})


# ── Query options ───────────────────────────────────────


@dataclass
class TransactionFilterOptions:
    """Filter fields are AND-combined; unset fields do not filter."""
    filter_description: str = ""
    filter_from_date: str = ""
    filter_to_date: str = ""
    filter_tags: list[str] = field(default_factory=list)
    filter_accounts: list[int] = field(default_factory=list)
    exclude_expense_income: bool = False
    exclude_transfer: bool = False

    def is_empty(self) -> bool:
        return (
            not self.filter_description
            and not self.filter_from_date
            and not self.filter_to_date
            and not self.filter_tags
            and not self.filter_accounts
            and not self.exclude_expense_income
            and not self.exclude_transfer
        )

    def matches_date(self, transaction: Transaction) -> bool:
        return (
            (not self.filter_from_date or self.filter_from_date <= transaction.date)
            and (not self.filter_to_date or transaction.date <= self.filter_to_date)
        )

    def matches(self, transaction: Transaction) -> bool:
        if self.filter_description and (
            self.filter_description.lower() not in transaction.description.lower()
        ):
            return False
        if not self.matches_date(transaction):
            return False
        if self.filter_tags and not set(self.filter_tags).intersection(transaction.tags):
            return False
        if self.filter_accounts:
            wanted = set(self.filter_accounts)
            if not any(c.account_id in wanted for c in transaction.components):
                return False
        if transaction.type == TransactionType.EXPENSE_INCOME:
            return not self.exclude_expense_income
        if transaction.type == TransactionType.TRANSFER:
            return not self.exclude_transfer
        return False


@dataclass
class GetTransactionOptions:
    offset: int = 0
    # 0 means no limit.
    limit: int = 0
    filter: TransactionFilterOptions = field(default_factory=TransactionFilterOptions)
