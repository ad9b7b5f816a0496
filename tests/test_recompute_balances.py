"""Tests for scripts.recompute_balances."""

from vogon.database import codec, keys

from scripts.recompute_balances import compute_balances, find_drift, fix_balances
from tests.conftest import make_account, make_transaction


def _corrupt_balance(repo, user, account_id, balance):
    key = keys.account_key(user.uuid, account_id)

    def body(txn):
        account = codec.decode_account(txn.get(key))
        account.balance = balance
        txn.put(key, codec.encode_account(account))

    repo.store.update(body)


class TestRecomputeBalances:
    def test_compute(self):
        transactions = [
            make_transaction("2015-11-01", (100, 0), (5, 1)),
            make_transaction("2015-11-02", (-30, 0)),
        ]
        assert compute_balances(transactions) == {0: 70, 1: 5}

    def test_no_drift(self, repo, user):
        repo.create_account(user, make_account())
        repo.create_transaction(user, make_transaction("2015-11-01", (100, 0)))
        assert find_drift(repo, user) == []

    def test_detect_and_fix(self, repo, user):
        repo.create_account(user, make_account("A"))
        repo.create_account(user, make_account("B"))
        repo.create_transaction(user, make_transaction("2015-11-01", (100, 0), (-40, 1)))
        _corrupt_balance(repo, user, 1, 7)

        assert find_drift(repo, user) == [(1, "B", 7, -40)]
        assert fix_balances(repo, user) == 1
        assert [a.balance for a in repo.get_accounts(user)] == [100, -40]
        assert find_drift(repo, user) == []

    def test_account_without_transactions(self, repo, user):
        repo.create_account(user, make_account())
        _corrupt_balance(repo, user, 0, 55)
        assert find_drift(repo, user) == [(0, "Orange Bank", 55, 0)]
