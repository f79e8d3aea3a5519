"""
Error taxonomy for the store layer.

Engine errors (`aiosqlite.Error`) are mapped once, where they are observed,
into one of these classes. Nothing in this package retries automatically.
"""

from __future__ import annotations

from larder.core import CoreError, NotFoundError


class StoreError(CoreError):
    """Base class for all store errors."""


class OpenError(StoreError):
    """The engine refused the connection or the schema could not be applied."""


class TransactionError(StoreError):
    """A transaction aborted or was misused."""


class TransactionInactiveError(TransactionError):
    """A handle was used after its transaction finished."""


class ReadOnlyError(TransactionError):
    """A write was issued through a read-only transaction."""


class TransactionTimeoutError(TransactionError):
    """A store operation or completion barrier did not finish in time."""


class WriteError(StoreError):
    """A put/add/delete/clear failed inside a live transaction."""


class ReadError(StoreError):
    """A lookup or cursor scan failed inside a live transaction."""


class InvalidKeyError(StoreError):
    """A key (or key field) has a type the store cannot index."""


class UnknownCollectionError(StoreError, NotFoundError):
    """A collection or index name is not declared in the schema."""


class ParseError(StoreError):
    """A snapshot document is not valid structured data."""


class SnapshotFileError(StoreError):
    """The snapshot file could not be read."""
