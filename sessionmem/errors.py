from __future__ import annotations


class ValidationError(ValueError):
    """A write was rejected because a required identifier was missing."""


class NotFoundError(LookupError):
    """The operation needs a row that does not exist."""


class StorageError(RuntimeError):
    """The storage engine failed; the original sqlite3 error is chained."""
