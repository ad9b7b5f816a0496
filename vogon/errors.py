"""Error kinds raised by the ledger core.

The CLI reports any of these as an error message and a non-zero exit.
NotFound/InvalidInput are caller mistakes, Codec/Storage are internal.
"""

from __future__ import annotations


class VogonError(Exception):
    """Base class for all ledger errors."""


class NotFoundError(VogonError):
    """Raised when a record referenced by id or key does not exist."""


class InvalidInputError(VogonError):
    """Raised when input fails validation or normalization."""


class ConflictError(VogonError):
    """Raised when a write would clash with an existing record."""


class UserAlreadyExistsError(ConflictError):
    """Raised when a username is already taken by another user."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"User '{username}' already exists")


class CodecError(VogonError):
    """Raised when a stored value cannot be encoded or decoded."""

    def __init__(self, message: str, key: bytes | None = None):
        self.key = key
        if key is not None:
            message = f"{message} (key {key!r})"
        super().__init__(message)


class StorageError(VogonError):
    """Raised when the underlying key/value store fails."""


class CancelledError(VogonError):
    """Raised when an operation observes a cancelled or expired token."""
