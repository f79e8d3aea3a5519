"""
Transaction coordinator for Larder.

A `Transaction` is scoped to an explicit set of collections and a mode. All
work inside it goes through the `CollectionHandle`/`IndexHandle` objects it
hands out; once the transaction's `async with` block exits, it commits (or
rolls back on error) and every handle it produced becomes inactive.

SQLite transactions are per connection, so the coordinator serializes
transactions with an `asyncio.Lock`; waiting for it is bounded by the same
operation timeout as every engine call. Inside one transaction, any number of
tasks may issue operations concurrently; aiosqlite applies them in the order
they were issued.

`CompletionBarrier` is the fan-out primitive: it resolves only once a known
number of sub-operations have each completed, in whatever order.

Usage:
    async with coordinator.transaction(["diary", "foodList"], TransactionMode.READ_WRITE) as tx:
        diary = tx.collection("diary")
        key = await diary.put({"name": "Porridge"})
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Iterable, Mapping, Sequence, TypeVar

import aiosqlite

from larder.core.db.codec import decode_record, encode_index_value, encode_key, encode_record
from larder.core.db.models import CollectionSchema, DatabaseSchema, IndexSchema, Record
from larder.core.db.schema import index_expression
from larder.core.errors import (
    ReadError,
    ReadOnlyError,
    TransactionError,
    TransactionInactiveError,
    TransactionTimeoutError,
    UnknownCollectionError,
    WriteError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rows pulled per round-trip while walking a cursor.
CURSOR_BATCH_SIZE = 128


class TransactionMode(Enum):
    READ = "read"
    READ_WRITE = "readwrite"


# =============================================================================
# Completion barrier
# =============================================================================


@dataclass(frozen=True, slots=True)
class BarrierOutcome:
    """Final tally of a completion barrier."""

    expected: int
    succeeded: int
    errors: tuple[BaseException, ...] = ()

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors


class CompletionBarrier:
    """
    Resolves once exactly `expected` sub-operations have completed.

    Each sub-operation reports once, either with `arrive()` (success) or
    `fail(error)` (counted failure). Reporting more than `expected` times is a
    programming error and raises RuntimeError.

    `spawn()` runs an awaitable as a task and reports its outcome for you.
    """

    def __init__(self, expected: int) -> None:
        if expected < 0:
            raise ValueError("expected must be >= 0")
        self._expected = expected
        self._succeeded = 0
        self._errors: list[BaseException] = []
        self._done = asyncio.Event()
        # Strong references; the loop only keeps weak ones to running tasks.
        self._tasks: set[asyncio.Task[Any]] = set()
        if expected == 0:
            self._done.set()

    @property
    def expected(self) -> int:
        return self._expected

    @property
    def completed(self) -> int:
        return self._succeeded + len(self._errors)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def arrive(self) -> None:
        self._succeeded += 1
        self._check()

    def fail(self, error: BaseException) -> None:
        self._errors.append(error)
        self._check()

    def _check(self) -> None:
        if self.completed > self._expected:
            raise RuntimeError(
                f"Completion barrier overrun: {self.completed} arrivals, expected {self._expected}"
            )
        if self.completed == self._expected:
            self._done.set()

    def outcome(self) -> BarrierOutcome:
        return BarrierOutcome(
            expected=self._expected,
            succeeded=self._succeeded,
            errors=tuple(self._errors),
        )

    def spawn(self, operation: Awaitable[T]) -> asyncio.Task[T | None]:
        async def runner() -> T | None:
            try:
                result = await operation
            except Exception as exc:
                self.fail(exc)
                return None
            self.arrive()
            return result

        task = asyncio.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self, timeout: float | None = None) -> BarrierOutcome:
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransactionTimeoutError(
                f"Timed out after {timeout}s with {self.completed}/{self._expected} "
                "operations complete"
            ) from exc
        return self.outcome()


# =============================================================================
# Transactions and handles
# =============================================================================


class Transaction:
    """One SQLite transaction scoped to a fixed set of collections."""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        scope: Mapping[str, CollectionSchema],
        mode: TransactionMode,
        *,
        timeout: float | None,
    ) -> None:
        self._conn = conn
        self._scope = dict(scope)
        self._mode = mode
        self._timeout = timeout
        self._active = True
        self._handles: dict[str, CollectionHandle] = {}

    @property
    def mode(self) -> TransactionMode:
        return self._mode

    @property
    def scope(self) -> tuple[str, ...]:
        return tuple(self._scope)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def timeout(self) -> float | None:
        return self._timeout

    def collection(self, name: str) -> CollectionHandle:
        self._check_active()
        handle = self._handles.get(name)
        if handle is None:
            schema = self._scope.get(name)
            if schema is None:
                raise TransactionError(
                    f"Collection {name!r} is not part of this transaction {self.scope!r}"
                )
            handle = CollectionHandle(self, schema)
            self._handles[name] = handle
        return handle

    def _check_active(self) -> None:
        if not self._active:
            raise TransactionInactiveError("Transaction has already finished")

    def _check_writable(self) -> None:
        if self._mode is not TransactionMode.READ_WRITE:
            raise ReadOnlyError("Write issued in a read-only transaction")

    def _finish(self) -> None:
        self._active = False

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        self._check_active()
        try:
            return await asyncio.wait_for(self._conn.execute(sql, params), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransactionTimeoutError(f"Store operation timed out after {self._timeout}s") from exc

    async def _fetchmany(self, cursor: aiosqlite.Cursor, size: int) -> Iterable[aiosqlite.Row]:
        try:
            return await asyncio.wait_for(cursor.fetchmany(size), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransactionTimeoutError(f"Cursor read timed out after {self._timeout}s") from exc


class CollectionHandle:
    """Per-collection operations bound to one transaction."""

    def __init__(self, transaction: Transaction, schema: CollectionSchema) -> None:
        self._tx = transaction
        self._schema = schema
        self._table = f'"{schema.name}"'

    @property
    def name(self) -> str:
        return self._schema.name

    @property
    def schema(self) -> CollectionSchema:
        return self._schema

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------

    async def get(self, key: Any) -> Record | None:
        pk = encode_key(key)
        try:
            cursor = await self._tx._execute(
                f"SELECT pk, data FROM {self._table} WHERE pk = ?;", (pk,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise ReadError(f"Lookup of {key!r} in {self.name!r} failed: {exc}") from exc
        if row is None:
            return None
        return decode_record(self._schema, row[0], row[1])

    async def count(self) -> int:
        try:
            cursor = await self._tx._execute(f"SELECT COUNT(*) FROM {self._table};")
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise ReadError(f"Count of {self.name!r} failed: {exc}") from exc
        return int(row[0]) if row else 0

    async def iterate(self) -> AsyncIterator[Record]:
        """
        Forward cursor over the whole collection in primary-key order.

        The cursor is consumed lazily and cannot be restarted.
        """
        try:
            cursor = await self._tx._execute(f"SELECT pk, data FROM {self._table} ORDER BY pk;")
        except aiosqlite.Error as exc:
            raise ReadError(f"Cursor on {self.name!r} failed: {exc}") from exc
        try:
            while True:
                self._tx._check_active()
                try:
                    rows = await self._tx._fetchmany(cursor, CURSOR_BATCH_SIZE)
                except aiosqlite.Error as exc:
                    raise ReadError(f"Cursor on {self.name!r} failed: {exc}") from exc
                if not rows:
                    break
                for row in rows:
                    yield decode_record(self._schema, row[0], row[1])
        finally:
            await cursor.close()

    async def get_all(self) -> list[Record]:
        return [record async for record in self.iterate()]

    def index(self, name: str) -> IndexHandle:
        index = self._schema.get_index(name)
        if index is None:
            raise UnknownCollectionError(f"Collection {self.name!r} has no index {name!r}")
        return IndexHandle(self._tx, self._schema, index)

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------

    def _encode(self, record: Mapping[str, Any], key: Any) -> tuple[Any, str]:
        try:
            return encode_record(self._schema, record, key)
        except (TypeError, ValueError) as exc:
            raise WriteError(f"Record for {self.name!r} cannot be stored: {exc}") from exc

    def _result_key(self, record: Mapping[str, Any], key: Any, cursor: aiosqlite.Cursor) -> Any:
        if key is None:
            key = record.get(self._schema.key_field)
        if key is None and self._schema.auto_increment:
            key = cursor.lastrowid
        return key

    async def put(self, record: Mapping[str, Any], *, key: Any = None) -> Any:
        """
        Insert or replace `record`. Returns its key.

        `key` overrides the record's own key field; the stored record's key
        field is set to it.
        """
        self._tx._check_writable()
        pk, data = self._encode(record, key)
        try:
            if pk is None:
                cursor = await self._tx._execute(
                    f"INSERT INTO {self._table} (data) VALUES (?);", (data,)
                )
            else:
                cursor = await self._tx._execute(
                    f"""
                    INSERT INTO {self._table} (pk, data) VALUES (?, ?)
                    ON CONFLICT(pk) DO UPDATE SET data = excluded.data;
                    """,
                    (pk, data),
                )
        except aiosqlite.Error as exc:
            raise WriteError(f"Put into {self.name!r} failed: {exc}") from exc
        return self._result_key(record, key, cursor)

    async def add(self, record: Mapping[str, Any]) -> Any:
        """Insert `record`; fails with WriteError if its key already exists."""
        self._tx._check_writable()
        pk, data = self._encode(record, None)
        try:
            if pk is None:
                cursor = await self._tx._execute(
                    f"INSERT INTO {self._table} (data) VALUES (?);", (data,)
                )
            else:
                cursor = await self._tx._execute(
                    f"INSERT INTO {self._table} (pk, data) VALUES (?, ?);", (pk, data)
                )
        except aiosqlite.IntegrityError as exc:
            raise WriteError(
                f"Key {record.get(self._schema.key_field)!r} already exists in {self.name!r}"
            ) from exc
        except aiosqlite.Error as exc:
            raise WriteError(f"Add into {self.name!r} failed: {exc}") from exc
        return self._result_key(record, None, cursor)

    async def delete(self, key: Any) -> None:
        self._tx._check_writable()
        pk = encode_key(key)
        try:
            await self._tx._execute(f"DELETE FROM {self._table} WHERE pk = ?;", (pk,))
        except aiosqlite.Error as exc:
            raise WriteError(f"Delete of {key!r} from {self.name!r} failed: {exc}") from exc

    async def clear(self) -> None:
        self._tx._check_writable()
        try:
            await self._tx._execute(f"DELETE FROM {self._table};")
        except aiosqlite.Error as exc:
            raise WriteError(f"Clear of {self.name!r} failed: {exc}") from exc


class IndexHandle:
    """Equality lookups over one secondary index."""

    def __init__(
        self,
        transaction: Transaction,
        collection: CollectionSchema,
        index: IndexSchema,
    ) -> None:
        self._tx = transaction
        self._collection = collection
        self._index = index
        self._where = f"{index_expression(index.field)} = json_extract(?, '$')"

    @property
    def name(self) -> str:
        return self._index.name

    async def _select(self, columns: str, value: Any, suffix: str = "") -> list[aiosqlite.Row]:
        try:
            cursor = await self._tx._execute(
                f'SELECT {columns} FROM "{self._collection.name}" WHERE {self._where}{suffix};',
                (encode_index_value(value),),
            )
            return list(await cursor.fetchall())
        except (TypeError, ValueError) as exc:
            raise ReadError(f"Cannot look up {value!r} in index {self.name!r}: {exc}") from exc
        except aiosqlite.Error as exc:
            raise ReadError(f"Index lookup on {self.name!r} failed: {exc}") from exc

    async def get(self, value: Any) -> Record | None:
        """First matching record in primary-key order, or None."""
        rows = await self._select("pk, data", value, " ORDER BY pk LIMIT 1")
        if not rows:
            return None
        return decode_record(self._collection, rows[0][0], rows[0][1])

    async def get_all(self, value: Any) -> list[Record]:
        rows = await self._select("pk, data", value, " ORDER BY pk")
        return [decode_record(self._collection, r[0], r[1]) for r in rows]

    async def count(self, value: Any) -> int:
        rows = await self._select("COUNT(*)", value)
        return int(rows[0][0]) if rows else 0


# =============================================================================
# Coordinator
# =============================================================================


class TransactionCoordinator:
    """Issues transactions on a single connection, one at a time."""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        schema: DatabaseSchema,
        *,
        timeout: float | None = None,
    ) -> None:
        self._conn = conn
        self._schema = schema
        self._timeout = timeout
        self._lock = asyncio.Lock()

    @property
    def timeout(self) -> float | None:
        return self._timeout

    def resolve_scope(self, names: str | Iterable[str]) -> dict[str, CollectionSchema]:
        if isinstance(names, str):
            names = (names,)
        scope: dict[str, CollectionSchema] = {}
        for name in names:
            collection = self._schema.get(name)
            if collection is None:
                raise UnknownCollectionError(f"Unknown collection: {name!r}")
            scope[name] = collection
        if not scope:
            raise TransactionError("A transaction needs at least one collection")
        return scope

    @asynccontextmanager
    async def transaction(
        self,
        names: str | Iterable[str],
        mode: TransactionMode = TransactionMode.READ,
    ) -> AsyncIterator[Transaction]:
        scope = self.resolve_scope(names)
        begin = "BEGIN IMMEDIATE;" if mode is TransactionMode.READ_WRITE else "BEGIN DEFERRED;"

        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Timed out waiting %ss for a %s transaction on %s",
                self._timeout,
                mode.value,
                list(scope),
            )
            raise TransactionTimeoutError(
                f"Another transaction held the database for more than {self._timeout}s"
            ) from exc

        try:
            try:
                await asyncio.wait_for(self._conn.execute(begin), timeout=self._timeout)
            except (aiosqlite.Error, asyncio.TimeoutError) as exc:
                logger.error("Could not begin %s transaction on %s: %s", mode.value, list(scope), exc)
                raise TransactionError(f"Could not begin transaction: {exc}") from exc

            tx = Transaction(self._conn, scope, mode, timeout=self._timeout)
            try:
                yield tx
            except BaseException:
                tx._finish()
                await self._rollback(scope)
                raise

            tx._finish()
            try:
                await asyncio.wait_for(self._conn.execute("COMMIT;"), timeout=self._timeout)
            except (aiosqlite.Error, asyncio.TimeoutError) as exc:
                logger.error("Commit failed on %s: %s", list(scope), exc)
                await self._rollback(scope)
                raise TransactionError(f"Commit failed: {exc}") from exc
        finally:
            self._lock.release()

    async def _rollback(self, scope: Mapping[str, CollectionSchema]) -> None:
        if not self._conn.in_transaction:
            return
        try:
            await self._conn.execute("ROLLBACK;")
        except aiosqlite.Error:
            logger.exception("Rollback failed on %s", list(scope))
