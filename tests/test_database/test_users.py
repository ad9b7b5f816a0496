"""Tests for user registration, renaming and password handling."""

import pytest

from vogon.database import codec, keys
from vogon.database.models import User
from vogon.database.repository import Repository
from vogon.errors import ConflictError, InvalidInputError, UserAlreadyExistsError

from tests.conftest import make_account


class TestCreateUser:
    def test_create_and_get(self, repo):
        user = User()
        repo.set_username(user, "user01")
        repo.set_password(user, "mypassword")
        repo.save_user(user)

        assert user.username == "user01"
        assert user.new_username == ""
        assert user.uuid

        saved = repo.get_user("user01")
        assert saved == User(username="user01", uuid=user.uuid, password_hash=user.password_hash)

    def test_get_missing(self, repo):
        assert repo.get_user("nobody") is None

    def test_duplicate_username(self, repo, user):
        with pytest.raises(UserAlreadyExistsError) as exc_info:
            repo.create_user("user01", "other")
        assert exc_info.value.username == "user01"
        assert repo.get_user("user01").uuid == user.uuid

    def test_failed_create_keeps_user_unsaved(self, repo, user):
        other = User()
        repo.set_username(other, "user01")
        with pytest.raises(UserAlreadyExistsError):
            repo.save_user(other)
        assert other.uuid == ""
        assert other.username == ""

    def test_create_without_name(self, repo):
        with pytest.raises(InvalidInputError):
            repo.save_user(User())

    def test_uuids_are_unique(self, repo):
        a = repo.create_user("a")
        b = repo.create_user("b")
        assert a.uuid != b.uuid

    def test_get_all_users_skips_owned_keys(self, repo, user):
        repo.create_account(user, make_account())
        repo.create_user("user02")
        names = sorted(u.username for u in repo.get_all_users())
        assert names == ["user01", "user02"]


class TestSetUsername:
    def test_trims(self):
        user = User()
        Repository.set_username(user, "  user01 \t")
        assert user.new_username == "user01"

    @pytest.mark.parametrize("name", ["", "   ", None])
    def test_empty(self, name):
        with pytest.raises(InvalidInputError):
            Repository.set_username(User(), name)

    def test_separator(self):
        with pytest.raises(InvalidInputError):
            Repository.set_username(User(), "a/b")


class TestPasswords:
    def test_validate(self, repo, user):
        saved = repo.get_user("user01")
        assert repo.validate_password(saved, "mypassword")
        assert not repo.validate_password(saved, "wrong")

    def test_hash_is_bcrypt(self, user):
        assert user.password_hash.startswith("$2b$04$")
        assert "mypassword" not in user.password_hash

    def test_no_password_never_validates(self, repo):
        user = repo.create_user("nopass")
        assert user.password_hash == ""
        assert not repo.validate_password(user, "")

    def test_invalid_stored_hash(self):
        assert not Repository.validate_password(User(username="x", password_hash="garbage"), "x")

    def test_too_long(self, repo):
        with pytest.raises(InvalidInputError):
            repo.set_password(User(), "x" * 73)

    def test_72_bytes_ok(self, repo):
        user = User()
        repo.set_password(user, "x" * 72)
        assert repo.validate_password(user, "x" * 72)

    def test_change_password(self, repo, user):
        repo.set_password(user, "newpassword")
        repo.save_user(user)
        saved = repo.get_user("user01")
        assert repo.validate_password(saved, "newpassword")
        assert not repo.validate_password(saved, "mypassword")


class TestRename:
    def test_rename(self, repo, user):
        repo.create_account(user, make_account())
        old_uuid = user.uuid

        repo.set_username(user, "renamed")
        repo.save_user(user)

        assert user.username == "renamed"
        assert user.new_username == ""
        assert repo.get_user("user01") is None
        renamed = repo.get_user("renamed")
        assert renamed.uuid == old_uuid
        assert repo.validate_password(renamed, "mypassword")
        assert [a.name for a in repo.get_accounts(renamed)] == ["Orange Bank"]

    def test_rename_to_taken_name(self, repo, user):
        repo.create_user("user02")
        repo.set_username(user, "user02")
        with pytest.raises(UserAlreadyExistsError):
            repo.save_user(user)
        assert user.username == "user01"
        assert repo.get_user("user01").uuid == user.uuid

    def test_rename_to_same_name(self, repo, user):
        repo.set_username(user, "user01")
        repo.save_user(user)
        assert repo.get_user("user01").uuid == user.uuid

    def test_uuid_mismatch_is_conflict(self, repo, user):
        stale = User(username="user01", uuid="someone-else", password_hash="")
        with pytest.raises(ConflictError):
            repo.save_user(stale)
        assert repo.get_user("user01").uuid == user.uuid

    def test_rename_old_record_mismatch_rolls_back(self, repo, user):
        stale = User(username="user01", uuid="someone-else")
        repo.set_username(stale, "fresh")
        with pytest.raises(ConflictError):
            repo.save_user(stale)
        assert repo.get_user("fresh") is None
        assert repo.get_user("user01").uuid == user.uuid

    def test_stored_username_not_in_value(self, repo, user):
        value = repo.store.view(lambda txn: txn.get(keys.user_key("user01")))
        assert codec.decode_user(value, "whatever").username == "whatever"
