"""Shared test fixtures."""

from __future__ import annotations

import pytest

from vogon.database.models import Account, Transaction, TransactionComponent
from vogon.database.repository import Repository

# Lowest bcrypt work factor, keeps password hashing fast in tests.
TEST_BCRYPT_ROUNDS = 4


@pytest.fixture
def repo():
    r = Repository(":memory:", bcrypt_rounds=TEST_BCRYPT_ROUNDS)
    yield r
    r.close()


@pytest.fixture
def user(repo):
    return repo.create_user("user01", "mypassword")


def make_account(name: str = "Orange Bank", currency: str = "USD", **overrides) -> Account:
    defaults = dict(name=name, currency=currency, include_in_total=True, show_in_list=True)
    defaults.update(overrides)
    return Account(**defaults)


def make_transaction(date: str, *components: tuple[int, int], **overrides) -> Transaction:
    """Build a transaction from (amount, account_id) pairs."""
    defaults = dict(
        description="Test",
        type=0,
        tags=[],
        date=date,
        components=[TransactionComponent(amount=a, account_id=i) for a, i in components],
    )
    defaults.update(overrides)
    return Transaction(**defaults)
