"""
Local record store: connection lifecycle + CRUD.

Goals:
- One explicit `Database` object per open database (no global handle).
- SQLite + aiosqlite, async/await friendly.
- Schema is created/extended at open time, before anything else touches it.

Note:
- Schema models live in `larder.core.db.models`
- Schema/migrations live in `larder.core.db.schema`
- Transactions, handles and the completion barrier live in
  `larder.core.db.transaction`
- Snapshot export/import lives in `larder.core.snapshot`
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from types import TracebackType
from typing import Any, Iterable, Mapping, Sequence

import aiosqlite

from larder.core.db.models import CollectionSchema, DatabaseSchema, Record, UpdateResult
from larder.core.db.schema import DEFAULT_SCHEMA, SCHEMA_VERSION, ensure_schema
from larder.core.db.transaction import (
    CompletionBarrier,
    IndexHandle,
    Transaction,
    TransactionCoordinator,
    TransactionMode,
)
from larder.core.errors import (
    InvalidKeyError,
    OpenError,
    ReadError,
    StoreError,
    TransactionError,
    UnknownCollectionError,
    WriteError,
)
from larder.core.events import (
    DatabaseOpenedEvent,
    DatabaseOpenFailedEvent,
    EventBus,
    WriteFailedEvent,
    event_bus,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class Database:
    """
    Async access layer for the local record store.

    Usage:
        db = await open_database("larder.sqlite3")
        key = await db.upsert({"name": "Oats"}, "foodList")
        food = await db.get_one(key, "foodList")
        await db.close()

    Notes:
    - Opening also migrates the schema; a `Database` that is not open refuses
      every operation.
    - One connection per database; transactions are serialized on it.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        schema: DatabaseSchema = DEFAULT_SCHEMA,
        version: int = SCHEMA_VERSION,
        timeout: float | None = DEFAULT_TIMEOUT,
        events: EventBus | None = None,
    ) -> None:
        self._db_path = str(db_path)
        self._schema = schema
        self._version = version
        self._timeout = timeout
        self._events = events if events is not None else event_bus
        self._conn: aiosqlite.Connection | None = None
        self._coordinator: TransactionCoordinator | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def version(self) -> int:
        return self._version

    @property
    def schema(self) -> DatabaseSchema:
        return self._schema

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def collection_names(self) -> tuple[str, ...]:
        return self._schema.names

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """
        Connect and bring the schema to `version`.

        Raises OpenError (after notifying) if the engine refuses the
        connection or the schema cannot be applied; the database stays closed.
        """
        if self._conn is not None:
            return

        conn: aiosqlite.Connection | None = None
        try:
            # Autocommit mode: the coordinator issues BEGIN/COMMIT itself.
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            await conn.execute("PRAGMA journal_mode = WAL;")
            await conn.execute("PRAGMA synchronous = NORMAL;")
            previous = await ensure_schema(conn, self._schema, self._version)
        except (aiosqlite.Error, OSError, RuntimeError) as exc:
            logger.error("Error opening database %s: %s", self._db_path, exc)
            if conn is not None:
                await conn.close()
            await self._events.publish(DatabaseOpenFailedEvent(path=self._db_path, error=str(exc)))
            raise OpenError(f"Could not open {self._db_path}: {exc}") from exc

        self._conn = conn
        self._coordinator = TransactionCoordinator(conn, self._schema, timeout=self._timeout)
        logger.info("Database %s opened at version %d", self._db_path, self._version)
        await self._events.publish(
            DatabaseOpenedEvent(
                path=self._db_path, version=self._version, previous_version=previous
            )
        )

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        self._coordinator = None

    async def __aenter__(self) -> Database:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _require_coordinator(self) -> TransactionCoordinator:
        if self._coordinator is None:
            raise RuntimeError("Database is not open. Call await db.open() first.")
        return self._coordinator

    def _require_collection(self, name: str) -> CollectionSchema:
        collection = self._schema.get(name)
        if collection is None:
            raise UnknownCollectionError(f"Unknown collection: {name!r}")
        return collection

    def transaction(
        self,
        names: str | Iterable[str],
        mode: TransactionMode = TransactionMode.READ,
    ) -> AbstractAsyncContextManager[Transaction]:
        """
        Open a transaction scoped to `names`.

        Use as `async with db.transaction(["diary"], TransactionMode.READ_WRITE) as tx:`.
        """
        return self._require_coordinator().transaction(names, mode)

    async def _write_failed(self, collection: str, operation: str, exc: Exception) -> None:
        logger.error("%s on %s failed: %s", operation, collection, exc)
        await self._events.publish(
            WriteFailedEvent(collection=collection, operation=operation, error=str(exc))
        )

    # ===========================================================================
    # Writes
    # ===========================================================================

    async def upsert(self, record: Mapping[str, Any], collection: str) -> Any:
        """
        Write `record`, replacing any record with the same key.

        Returns the key (engine-assigned for auto-increment collections when the
        record has none).
        """
        self._require_collection(collection)
        try:
            async with self.transaction(collection, TransactionMode.READ_WRITE) as tx:
                return await tx.collection(collection).put(record)
        except (WriteError, InvalidKeyError) as exc:
            await self._write_failed(collection, "upsert", exc)
            raise
        except TransactionError as exc:
            await self._write_failed(collection, "upsert", exc)
            raise WriteError(f"Upsert into {collection!r} failed: {exc}") from exc

    async def update(self, partial: Mapping[str, Any], collection: str, key: Any) -> UpdateResult:
        """
        Merge `partial` onto the record at `key`.

        Fields in `partial` overwrite, all other fields are kept. When no
        record exists, `partial` is written as a new record under `key`.
        When the existence check itself fails, nothing is written, the failure
        is published as `store.write_failed` and READ_FAILED is returned.
        """
        self._require_collection(collection)
        read_error: ReadError | None = None
        try:
            async with self.transaction(collection, TransactionMode.READ_WRITE) as tx:
                store = tx.collection(collection)
                try:
                    existing = await store.get(key)
                except ReadError as exc:
                    read_error = exc
                else:
                    if existing is None:
                        merged = dict(partial)
                        result = UpdateResult.NOT_FOUND
                    else:
                        merged = {**existing, **partial}
                        result = UpdateResult.FOUND

                    await store.put(merged, key=key)
                    return result
        except (WriteError, InvalidKeyError) as exc:
            await self._write_failed(collection, "update", exc)
            raise
        except TransactionError as exc:
            await self._write_failed(collection, "update", exc)
            raise WriteError(f"Update in {collection!r} failed: {exc}") from exc

        # Published once the transaction is released so handlers may use the store.
        assert read_error is not None
        await self._write_failed(collection, "update", read_error)
        return UpdateResult.READ_FAILED

    async def delete(self, key: Any, collection: str) -> None:
        """Remove the record at `key`; a missing key is not an error."""
        self._require_collection(collection)
        try:
            async with self.transaction(collection, TransactionMode.READ_WRITE) as tx:
                await tx.collection(collection).delete(key)
        except (WriteError, InvalidKeyError) as exc:
            await self._write_failed(collection, "delete", exc)
            raise
        except TransactionError as exc:
            await self._write_failed(collection, "delete", exc)
            raise WriteError(f"Delete from {collection!r} failed: {exc}") from exc

    # ===========================================================================
    # Reads
    # ===========================================================================

    async def get_one(self, key: Any, collection: str) -> Record | None:
        async with self.transaction(collection) as tx:
            return await tx.collection(collection).get(key)

    async def get_many(self, keys: Sequence[Any], collection: str) -> list[Record | None]:
        """
        Look up every key in one read transaction.

        Results are in the order of `keys` (None where absent), whatever order
        the lookups complete in.
        """
        results: list[Record | None] = [None] * len(keys)

        async with self.transaction(collection) as tx:
            store = tx.collection(collection)
            barrier = CompletionBarrier(len(keys))

            async def fetch(slot: int, key: Any) -> None:
                results[slot] = await store.get(key)

            for slot, key in enumerate(keys):
                barrier.spawn(fetch(slot, key))
            outcome = await barrier.wait(self._timeout)

        if not outcome.ok:
            first = outcome.errors[0]
            if isinstance(first, StoreError):
                raise first
            raise ReadError(f"{outcome.failed} of {len(keys)} lookups failed: {first}") from first
        return results

    async def get_all(self, collection: str) -> list[Record]:
        """Every record of `collection`, in primary-key order."""
        async with self.transaction(collection) as tx:
            return await tx.collection(collection).get_all()

    async def count(self, collection: str) -> int:
        async with self.transaction(collection) as tx:
            return await tx.collection(collection).count()

    # ===========================================================================
    # Ad-hoc handles
    # ===========================================================================

    def collection(self, name: str) -> CollectionView:
        return CollectionView(self, self._require_collection(name))

    def index(self, collection: str, index: str) -> IndexView:
        schema = self._require_collection(collection)
        if schema.get_index(index) is None:
            raise UnknownCollectionError(f"Collection {collection!r} has no index {index!r}")
        return IndexView(self, collection, index)


class CollectionView:
    """
    Read handle on one collection, outside any caller-managed transaction.

    Each call runs in its own short read transaction, so a view may be kept
    across awaits. It must not be used from inside `db.transaction(...)`: the
    coordinator runs one transaction at a time, so such a call waits for the
    operation timeout and raises TransactionTimeoutError.
    """

    def __init__(self, db: Database, schema: CollectionSchema) -> None:
        self._db = db
        self._schema = schema

    @property
    def name(self) -> str:
        return self._schema.name

    async def get(self, key: Any) -> Record | None:
        return await self._db.get_one(key, self.name)

    async def get_all(self) -> list[Record]:
        return await self._db.get_all(self.name)

    async def count(self) -> int:
        return await self._db.count(self.name)

    def index(self, name: str) -> IndexView:
        return self._db.index(self.name, name)


class IndexView:
    """Equality lookups over one index, each in its own read transaction."""

    def __init__(self, db: Database, collection: str, name: str) -> None:
        self._db = db
        self._collection = collection
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _handle(self, tx: Transaction) -> IndexHandle:
        return tx.collection(self._collection).index(self._name)

    async def get(self, value: Any) -> Record | None:
        async with self._db.transaction(self._collection) as tx:
            return await self._handle(tx).get(value)

    async def get_all(self, value: Any) -> list[Record]:
        async with self._db.transaction(self._collection) as tx:
            return await self._handle(tx).get_all(value)

    async def count(self, value: Any) -> int:
        async with self._db.transaction(self._collection) as tx:
            return await self._handle(tx).count(value)


async def open_database(
    db_path: str | Path,
    version: int = SCHEMA_VERSION,
    *,
    schema: DatabaseSchema = DEFAULT_SCHEMA,
    timeout: float | None = DEFAULT_TIMEOUT,
    events: EventBus | None = None,
) -> Database:
    """Open (and migrate) a database. Raises OpenError if that fails."""
    db = Database(db_path, schema=schema, version=version, timeout=timeout, events=events)
    await db.open()
    return db


__all__ = [
    "CollectionView",
    "Database",
    "IndexView",
    "Transaction",
    "TransactionMode",
    "open_database",
]
