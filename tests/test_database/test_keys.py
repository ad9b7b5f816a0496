"""Tests for the keyspace layout."""

import pytest

from vogon.database import keys
from vogon.errors import CodecError

UUID = "0b6a5f5e-7f5c-4d0c-9d8e-3f1a2b3c4d5e"


class TestIds:
    def test_big_endian_order(self):
        assert keys.encode_id(1) < keys.encode_id(2) < keys.encode_id(256)
        assert keys.encode_id(0) == b"\x00" * 8

    def test_negative_id_rejected(self):
        with pytest.raises(CodecError):
            keys.encode_id(-1)


class TestUserKeys:
    def test_user_key(self):
        assert keys.user_key("user01") == b"user/user01"
        assert keys.decode_user_key(b"user/user01") == "user01"

    def test_subspace_key_is_not_index_key(self):
        assert keys.is_user_index_key(b"user/user01")
        assert not keys.is_user_index_key(keys.account_key(UUID, 1))
        assert not keys.is_user_index_key(b"serverconfig/abc")

    def test_decode_rejects_nested(self):
        with pytest.raises(CodecError):
            keys.decode_user_key(b"user/a/b")

    def test_decode_rejects_other_prefix(self):
        with pytest.raises(CodecError):
            keys.decode_user_key(b"sequence/user")


class TestOwnedKeys:
    def test_account_key_layout(self):
        key = keys.account_key(UUID, 5)
        assert key == f"user/{UUID}/account/".encode() + b"\x00" * 7 + b"\x05"
        assert key.startswith(keys.account_prefix(UUID))

    def test_transaction_key_layout(self):
        key = keys.transaction_key(UUID, 258)
        assert key.startswith(keys.transaction_prefix(UUID))
        assert key.endswith(b"\x01\x02")

    def test_prefixes_do_not_overlap(self):
        assert not keys.transaction_key(UUID, 1).startswith(keys.account_prefix(UUID))
        assert not keys.account_key(UUID, 1).startswith(keys.transaction_prefix(UUID))

    def test_sequence_keys(self):
        assert keys.account_sequence_key(UUID) == f"sequence/user/{UUID}/account".encode()
        assert keys.transaction_sequence_key(UUID) == f"sequence/user/{UUID}/transaction".encode()


class TestServerConfigKeys:
    def test_name_with_separator(self):
        key = keys.server_config_key("a/b c")
        assert key.startswith(keys.SERVER_CONFIG_PREFIX)
        assert b"/" not in key[len(keys.SERVER_CONFIG_PREFIX):]
        assert keys.decode_server_config_key(key) == "a/b c"

    def test_unicode_name(self):
        key = keys.server_config_key("klucz-żółw")
        assert keys.decode_server_config_key(key) == "klucz-żółw"

    def test_decode_invalid(self):
        with pytest.raises(CodecError):
            keys.decode_server_config_key(b"serverconfig/\xff\xfe")
        with pytest.raises(CodecError):
            keys.decode_server_config_key(b"serverconfig/a/b")
        with pytest.raises(CodecError):
            keys.decode_server_config_key(b"user/x")
