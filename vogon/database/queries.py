"""Report queries that aggregate over a user's transactions and accounts.

Two charts are produced:

- balance chart: currency -> date -> running balance, computed in
  chronological order. Dates outside the filter range still advance the
  running total but emit no point.
- tags chart: currency -> Positive/Negative/Transfer -> tag_key -> amount,
  where tag_key is the comma-joined sorted tag list.

When the filter names accounts, only those accounts (in filter order)
are used and components on other accounts are dropped.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from vogon.database.codec import dumps_sorted
from vogon.database.models import (
    Account,
    Transaction,
    TransactionFilterOptions,
    TransactionType,
    User,
)
from vogon.database.repository import Repository
from vogon.database.store import CancellationToken, Txn

DateBalance = dict[str, int]
TagAmount = dict[str, int]


@dataclass
class TagAmounts:
    positive: TagAmount = field(default_factory=dict)
    negative: TagAmount = field(default_factory=dict)
    transfer: TagAmount = field(default_factory=dict)

    def to_dict(self) -> dict[str, TagAmount]:
        return {
            "Positive": dict(self.positive),
            "Negative": dict(self.negative),
            "Transfer": dict(self.transfer),
        }


@dataclass
class ReportData:
    balance_chart: dict[str, DateBalance]
    tags_chart: dict[str, TagAmounts]

    def to_dict(self) -> dict:
        return {
            "BalanceChart": self.balance_chart,
            "TagsChart": {
                currency: amounts.to_dict()
                for currency, amounts in self.tags_chart.items()
            },
        }

    def to_json(self) -> str:
        return dumps_sorted(self.to_dict())


def _currencies(accounts: list[Account]) -> dict[int, str]:
    return {account.id: account.currency for account in accounts}


def filter_accounts(accounts: list[Account],
                    options: TransactionFilterOptions) -> list[Account]:
    """Narrow accounts to options.filter_accounts, keeping the filter's order."""
    if not options.filter_accounts:
        return list(accounts)
    by_id = {account.id: account for account in accounts}
    return [by_id[account_id] for account_id in options.filter_accounts if account_id in by_id]


def filter_transactions(transactions: list[Transaction],
                        options: TransactionFilterOptions) -> list[Transaction]:
    """Matching transactions, with components outside filter_accounts dropped.

    Returns copies; the input transactions are not modified.
    """
    if options.is_empty():
        return list(transactions)
    wanted = set(options.filter_accounts)
    result = []
    for transaction in transactions:
        if not options.matches(transaction):
            continue
        components = transaction.components
        if wanted:
            components = [c for c in components if c.account_id in wanted]
        result.append(dataclasses.replace(transaction, components=list(components)))
    return result


def create_balance_chart(transactions: list[Transaction], accounts: list[Account],
                         options: TransactionFilterOptions) -> dict[str, DateBalance]:
    """Running balance per currency, one point per in-range date."""
    currencies = _currencies(accounts)
    chart: dict[str, DateBalance] = {}
    totals: dict[str, int] = {}
    empty_filter = options.is_empty()
    for transaction in sorted(transactions, key=lambda t: (t.date, t.id)):
        emit = empty_filter or options.matches_date(transaction)
        for component in transaction.components:
            currency = currencies.get(component.account_id)
            if currency is None:
                continue
            totals[currency] = totals.get(currency, 0) + component.amount
            currency_balance = chart.setdefault(currency, {})
            if emit:
                currency_balance[transaction.date] = totals[currency]
    return chart


def create_tags_chart(transactions: list[Transaction],
                      accounts: list[Account]) -> dict[str, TagAmounts]:
    """Per-currency income, expense and transfer sums grouped by tag_key."""
    currencies = _currencies(accounts)
    chart: dict[str, TagAmounts] = {}
    for transaction in transactions:
        tag_key = transaction.tag_key
        # currency -> [positive, negative]
        totals: dict[str, list[int]] = {}
        for component in transaction.components:
            currency = currencies.get(component.account_id)
            if currency is None:
                continue
            sums = totals.setdefault(currency, [0, 0])
            if component.amount > 0:
                sums[0] += component.amount
            elif component.amount < 0:
                sums[1] -= component.amount

        for currency, (positive, negative) in totals.items():
            amounts = chart.setdefault(currency, TagAmounts())
            if transaction.type == TransactionType.EXPENSE_INCOME:
                amounts.positive[tag_key] = amounts.positive.get(tag_key, 0) + positive
                amounts.negative[tag_key] = amounts.negative.get(tag_key, 0) + negative
            elif transaction.type == TransactionType.TRANSFER:
                amounts.transfer[tag_key] = amounts.transfer.get(tag_key, 0) + max(positive, negative)

    # Transfer is padded with the income/expense keys as well, so it is
    # never {} while Positive or Negative has entries.
    for amounts in chart.values():
        tag_keys = set(amounts.positive) | set(amounts.negative)
        for submap in (amounts.positive, amounts.negative, amounts.transfer):
            for tag_key in tag_keys:
                submap.setdefault(tag_key, 0)
    return chart


def build_report(transactions: list[Transaction], accounts: list[Account],
                 options: TransactionFilterOptions) -> ReportData:
    accounts = filter_accounts(accounts, options)
    balance_chart = create_balance_chart(transactions, accounts, options)
    tags_chart = create_tags_chart(filter_transactions(transactions, options), accounts)
    return ReportData(balance_chart=balance_chart, tags_chart=tags_chart)


def get_report(repo: Repository, user: User, options: TransactionFilterOptions | None = None,
               token: CancellationToken | None = None) -> ReportData:
    """Load a user's transactions and accounts from one snapshot and build the report."""
    options = options or TransactionFilterOptions()

    def body(txn: Txn) -> tuple[list[Transaction], list[Account]]:
        return repo.get_transactions(user, token=token), repo.get_accounts(user, token=token)

    transactions, accounts = repo.store.view(body, token)
    return build_report(transactions, accounts, options)
