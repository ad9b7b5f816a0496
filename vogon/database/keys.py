"""Keyspace layout for the ordered key/value store.

All keys share one ordered keyspace with "/" as the separator:

    user/{username}                          -> User record
    user/{uuid}/account/{id_be64}            -> Account record
    user/{uuid}/transaction/{id_be64}        -> Transaction record
    serverconfig/{b64(name)}                 -> raw config value
    sequence/user/{uuid}/account             -> account id counter
    sequence/user/{uuid}/transaction         -> transaction id counter

Ids are 8-byte big-endian so a prefix scan yields ascending id order.
Owned data is keyed by uuid, so a rename only rewrites user/{username}.
"""

from __future__ import annotations

import base64
import binascii
import struct

from vogon.errors import CodecError

SEPARATOR = "/"

USER_PREFIX = b"user" + SEPARATOR.encode()
SERVER_CONFIG_PREFIX = b"serverconfig" + SEPARATOR.encode()
SEQUENCE_PREFIX = b"sequence" + SEPARATOR.encode()

_ACCOUNT = b"account"
_TRANSACTION = b"transaction"
_ID = struct.Struct(">Q")


def encode_part(part: str) -> str:
    """URL-safe base64 without padding, for parts that may contain '/'."""
    return base64.urlsafe_b64encode(part.encode("utf-8")).rstrip(b"=").decode("ascii")


def decode_part(part: str) -> str:
    padding = "=" * (-len(part) % 4)
    try:
        return base64.urlsafe_b64decode(part + padding).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise CodecError(f"Invalid encoded key part '{part}'") from e


def encode_id(value: int) -> bytes:
    try:
        return _ID.pack(value)
    except struct.error as e:
        raise CodecError(f"Id out of range: {value}") from e


# ── Users ───────────────────────────────────────────────


def user_key(username: str) -> bytes:
    return USER_PREFIX + username.encode("utf-8")


def decode_user_key(key: bytes) -> str:
    if not key.startswith(USER_PREFIX):
        raise CodecError("Not a user key", key)
    rest = key[len(USER_PREFIX):]
    if b"/" in rest:
        raise CodecError("Invalid format of user key", key)
    try:
        return rest.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CodecError("Invalid username in user key", key) from e


def is_user_index_key(key: bytes) -> bool:
    """True for user/{username} keys, False for keys inside a user subspace."""
    return key.startswith(USER_PREFIX) and b"/" not in key[len(USER_PREFIX):]


def _owner_prefix(uuid: str) -> bytes:
    return USER_PREFIX + uuid.encode("ascii") + b"/"


# ── Accounts ────────────────────────────────────────────


def account_prefix(uuid: str) -> bytes:
    return _owner_prefix(uuid) + _ACCOUNT + b"/"


def account_key(uuid: str, account_id: int) -> bytes:
    return account_prefix(uuid) + encode_id(account_id)


def account_sequence_key(uuid: str) -> bytes:
    return SEQUENCE_PREFIX + _owner_prefix(uuid) + _ACCOUNT


# ── Transactions ────────────────────────────────────────


def transaction_prefix(uuid: str) -> bytes:
    return _owner_prefix(uuid) + _TRANSACTION + b"/"


def transaction_key(uuid: str, transaction_id: int) -> bytes:
    return transaction_prefix(uuid) + encode_id(transaction_id)


def transaction_sequence_key(uuid: str) -> bytes:
    return SEQUENCE_PREFIX + _owner_prefix(uuid) + _TRANSACTION


# ── Server config ───────────────────────────────────────


def server_config_key(name: str) -> bytes:
    return SERVER_CONFIG_PREFIX + encode_part(name).encode("ascii")


def decode_server_config_key(key: bytes) -> str:
    if not key.startswith(SERVER_CONFIG_PREFIX):
        raise CodecError("Not a config item key", key)
    rest = key[len(SERVER_CONFIG_PREFIX):]
    if b"/" in rest:
        raise CodecError("Invalid format of config item key", key)
    try:
        return decode_part(rest.decode("ascii"))
    except (UnicodeDecodeError, CodecError) as e:
        raise CodecError("Invalid config item key", key) from e
