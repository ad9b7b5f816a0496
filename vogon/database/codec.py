"""Record encodings.

Two encodings coexist:

- a compact binary encoding for values stored in the KV store
  (2-byte record header, length-prefixed fields, big-endian integers);
- the external JSON encoding used by backups, with capitalized field
  names in declaration order.

Both are deterministic: the same logical record always yields the same
bytes, so comparing encodings is a valid "unchanged" check.
"""

from __future__ import annotations

import json
import struct
from typing import Any

from vogon.errors import CodecError, InvalidInputError
from vogon.database.models import Account, Transaction, TransactionComponent, User

USER_HEADER = b"U\x01"
ACCOUNT_HEADER = b"A\x01"
TRANSACTION_HEADER = b"T\x01"

_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_I64 = struct.Struct(">q")

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
UINT64_MAX = (1 << 64) - 1


class _Writer:
    def __init__(self, header: bytes):
        self._parts: list[bytes] = [header]

    def u32(self, value: int) -> None:
        self._parts.append(_U32.pack(value))

    def u64(self, value: int) -> None:
        self._parts.append(_U64.pack(value))

    def i64(self, value: int) -> None:
        self._parts.append(_I64.pack(value))

    def boolean(self, value: bool) -> None:
        self._parts.append(b"\x01" if value else b"\x00")

    def string(self, value: str) -> None:
        raw = value.encode("utf-8")
        self.u32(len(raw))
        self._parts.append(raw)

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class _Reader:
    def __init__(self, data: bytes, header: bytes):
        if not data.startswith(header):
            raise CodecError(f"Unexpected record header {data[:2]!r}, wanted {header!r}")
        self._data = data
        self._pos = len(header)

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise CodecError("Truncated record")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def u32(self) -> int:
        return _U32.unpack(self._take(_U32.size))[0]

    def u64(self) -> int:
        return _U64.unpack(self._take(_U64.size))[0]

    def i64(self) -> int:
        return _I64.unpack(self._take(_I64.size))[0]

    def boolean(self) -> bool:
        flag = self._take(1)
        if flag not in (b"\x00", b"\x01"):
            raise CodecError(f"Invalid boolean byte {flag!r}")
        return flag == b"\x01"

    def string(self) -> str:
        raw = self._take(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CodecError("Invalid UTF-8 string in record") from e

    def done(self) -> None:
        if self._pos != len(self._data):
            raise CodecError(f"{len(self._data) - self._pos} trailing bytes in record")


def _encode(fn, header: bytes, record) -> bytes:
    w = _Writer(header)
    try:
        fn(w, record)
    except (struct.error, UnicodeEncodeError, TypeError) as e:
        raise CodecError(f"Cannot encode {type(record).__name__}: {e}") from e
    return w.getvalue()


# ── Binary: User ────────────────────────────────────────


def _write_user(w: _Writer, user: User) -> None:
    w.string(user.uuid)
    w.string(user.password_hash)


def encode_user(user: User) -> bytes:
    """Encode a user; the username lives in the key, not the value."""
    return _encode(_write_user, USER_HEADER, user)


def decode_user(data: bytes, username: str) -> User:
    r = _Reader(data, USER_HEADER)
    user = User(username=username, uuid=r.string(), password_hash=r.string())
    r.done()
    return user


# ── Binary: Account ─────────────────────────────────────


def _write_account(w: _Writer, account: Account) -> None:
    w.u64(account.id)
    w.string(account.name)
    w.i64(account.balance)
    w.string(account.currency)
    w.boolean(account.include_in_total)
    w.boolean(account.show_in_list)


def encode_account(account: Account) -> bytes:
    return _encode(_write_account, ACCOUNT_HEADER, account)


def decode_account(data: bytes) -> Account:
    r = _Reader(data, ACCOUNT_HEADER)
    account = Account(
        id=r.u64(), name=r.string(), balance=r.i64(), currency=r.string(),
        include_in_total=r.boolean(), show_in_list=r.boolean(),
    )
    r.done()
    return account


# ── Binary: Transaction ─────────────────────────────────


def _write_transaction(w: _Writer, t: Transaction) -> None:
    w.u64(t.id)
    w.string(t.description)
    w.i64(int(t.type))
    w.u32(len(t.tags))
    for tag in t.tags:
        w.string(tag)
    w.string(t.date)
    w.u32(len(t.components))
    for c in t.components:
        w.i64(c.amount)
        w.u64(c.account_id)


def encode_transaction(transaction: Transaction) -> bytes:
    return _encode(_write_transaction, TRANSACTION_HEADER, transaction)


def decode_transaction(data: bytes) -> Transaction:
    r = _Reader(data, TRANSACTION_HEADER)
    t = Transaction(id=r.u64(), description=r.string(), type=r.i64())
    t.tags = [r.string() for _ in range(r.u32())]
    t.date = r.string()
    t.components = [
        TransactionComponent(amount=r.i64(), account_id=r.u64())
        for _ in range(r.u32())
    ]
    r.done()
    return t


# ── JSON ────────────────────────────────────────────────


def account_to_dict(account: Account) -> dict[str, Any]:
    return {
        "ID": account.id,
        "Name": account.name,
        "Balance": account.balance,
        "Currency": account.currency,
        "IncludeInTotal": account.include_in_total,
        "ShowInList": account.show_in_list,
    }


def transaction_to_dict(t: Transaction) -> dict[str, Any]:
    return {
        "ID": t.id,
        "Description": t.description,
        "Type": int(t.type),
        "Tags": list(t.tags),
        "Date": t.date,
        "Components": [
            {"Amount": c.amount, "AccountID": c.account_id}
            for c in t.components
        ],
    }


def dumps(value: Any) -> str:
    """Two-space indented JSON, field order preserved."""
    return json.dumps(value, indent=2, ensure_ascii=False)


def dumps_sorted(value: Any) -> str:
    """Compact JSON with map keys sorted, for report output."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fields(obj: Any, what: str) -> dict[str, Any]:
    """Case-insensitive field lookup over a decoded JSON object."""
    if not isinstance(obj, dict):
        raise InvalidInputError(f"Expected a JSON object for {what}, got {type(obj).__name__}")
    return {k.lower(): v for k, v in obj.items()}


def _int(fields: dict, name: str, lo: int, hi: int, default: int = 0) -> int:
    value = fields.get(name.lower(), default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"Field {name} must be an integer, got {value!r}")
    if not lo <= value <= hi:
        raise InvalidInputError(f"Field {name} out of range: {value}")
    return value


def _str(fields: dict, name: str) -> str:
    value = fields.get(name.lower(), "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidInputError(f"Field {name} must be a string, got {value!r}")
    return value


def _bool(fields: dict, name: str) -> bool:
    value = fields.get(name.lower(), False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidInputError(f"Field {name} must be a boolean, got {value!r}")
    return value


def _list(fields: dict, name: str) -> list:
    value = fields.get(name.lower())
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidInputError(f"Field {name} must be a list, got {value!r}")
    return value


def account_from_dict(obj: Any) -> Account:
    f = _fields(obj, "account")
    return Account(
        id=_int(f, "ID", 0, UINT64_MAX),
        name=_str(f, "Name"),
        balance=_int(f, "Balance", INT64_MIN, INT64_MAX),
        currency=_str(f, "Currency"),
        include_in_total=_bool(f, "IncludeInTotal"),
        show_in_list=_bool(f, "ShowInList"),
    )


def component_from_dict(obj: Any) -> TransactionComponent:
    f = _fields(obj, "transaction component")
    return TransactionComponent(
        amount=_int(f, "Amount", INT64_MIN, INT64_MAX),
        account_id=_int(f, "AccountID", 0, UINT64_MAX),
    )


def transaction_from_dict(obj: Any) -> Transaction:
    f = _fields(obj, "transaction")
    tags = _list(f, "Tags")
    if not all(isinstance(tag, str) for tag in tags):
        raise InvalidInputError(f"Tags must be strings, got {tags!r}")
    return Transaction(
        id=_int(f, "ID", 0, UINT64_MAX),
        description=_str(f, "Description"),
        type=_int(f, "Type", INT64_MIN, INT64_MAX),
        tags=list(tags),
        date=_str(f, "Date"),
        components=[component_from_dict(c) for c in _list(f, "Components")],
    )


def loads(value: str) -> Any:
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Error unmarshaling json: {e}") from e
