"""
Tests for larder.core.db.transaction.

Tests cover:
- CompletionBarrier counting, ordering and timeouts
- Transaction scope, mode and lifetime rules
- Commit/rollback behavior
- Record-scoped failures inside a live transaction
- Lock-wait and statement timeouts
"""

from __future__ import annotations

import asyncio

import pytest

from larder.core.db.schema import DEFAULT_SCHEMA
from larder.core.db.transaction import CompletionBarrier, Transaction, TransactionMode
from larder.core.errors import (
    ReadOnlyError,
    TransactionError,
    TransactionInactiveError,
    TransactionTimeoutError,
    UnknownCollectionError,
    WriteError,
)
from larder.core.events import EventBus
from larder.core.store import Database


class TestCompletionBarrier:
    async def test_zero_expected_is_done(self) -> None:
        barrier = CompletionBarrier(0)
        assert barrier.done

        outcome = await barrier.wait(timeout=1.0)
        assert outcome.ok
        assert outcome.succeeded == 0

    async def test_negative_expected(self) -> None:
        with pytest.raises(ValueError):
            CompletionBarrier(-1)

    async def test_resolves_after_last_arrival(self) -> None:
        barrier = CompletionBarrier(2)

        barrier.arrive()
        assert not barrier.done
        assert barrier.completed == 1

        barrier.fail(ValueError("nope"))
        assert barrier.done

        outcome = await barrier.wait()
        assert outcome.succeeded == 1
        assert outcome.failed == 1
        assert not outcome.ok

    async def test_order_independent(self) -> None:
        finished: list[str] = []

        async def work(name: str, delay: float) -> str:
            await asyncio.sleep(delay)
            finished.append(name)
            return name

        barrier = CompletionBarrier(3)
        barrier.spawn(work("a", 0.03))
        barrier.spawn(work("b", 0.01))
        barrier.spawn(work("c", 0.02))

        outcome = await barrier.wait(timeout=2.0)

        assert outcome.succeeded == 3
        assert finished == ["b", "c", "a"]

    async def test_spawn_counts_exceptions(self) -> None:
        async def boom() -> None:
            raise KeyError("missing")

        barrier = CompletionBarrier(1)
        task = barrier.spawn(boom())
        outcome = await barrier.wait(timeout=1.0)

        assert await task is None
        assert outcome.failed == 1
        assert isinstance(outcome.errors[0], KeyError)

    async def test_overrun_is_an_error(self) -> None:
        barrier = CompletionBarrier(1)
        barrier.arrive()
        with pytest.raises(RuntimeError):
            barrier.arrive()

    async def test_timeout(self) -> None:
        barrier = CompletionBarrier(1)
        with pytest.raises(TransactionTimeoutError):
            await barrier.wait(timeout=0.01)


class TestTransaction:
    async def test_scope_is_enforced(self, db: Database) -> None:
        async with db.transaction("diary") as tx:
            assert tx.scope == ("diary",)
            with pytest.raises(TransactionError):
                tx.collection("meals")

    async def test_unknown_collection(self, db: Database) -> None:
        with pytest.raises(UnknownCollectionError):
            async with db.transaction(["diary", "recipes"]):
                pass

    async def test_empty_scope(self, db: Database) -> None:
        with pytest.raises(TransactionError):
            async with db.transaction([]):
                pass

    async def test_read_only_rejects_writes(self, db: Database) -> None:
        async with db.transaction("diary") as tx:
            with pytest.raises(ReadOnlyError):
                await tx.collection("diary").put({"name": "Oats"})

    async def test_handle_inactive_after_exit(self, db: Database) -> None:
        async with db.transaction("diary") as tx:
            diary = tx.collection("diary")

        assert not tx.active
        with pytest.raises(TransactionInactiveError):
            await diary.get(1)
        with pytest.raises(TransactionInactiveError):
            tx.collection("diary")

    async def test_multi_collection_commit(self, db: Database) -> None:
        async with db.transaction(["foodList", "diary"], TransactionMode.READ_WRITE) as tx:
            food_id = await tx.collection("foodList").put({"name": "Oats"})
            await tx.collection("diary").put({"name": "Oats", "foodId": food_id})

        assert await db.count("foodList") == 1
        diary = await db.get_all("diary")
        assert diary == [{"name": "Oats", "foodId": food_id, "id": 1}]

    async def test_rollback_on_error(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            async with db.transaction(["foodList", "diary"], TransactionMode.READ_WRITE) as tx:
                await tx.collection("foodList").put({"name": "Oats"})
                await tx.collection("diary").put({"name": "Oats"})
                raise RuntimeError("abort")

        assert await db.count("foodList") == 0
        assert await db.count("diary") == 0

    async def test_failed_add_keeps_transaction_alive(self, db: Database) -> None:
        async with db.transaction("meals", TransactionMode.READ_WRITE) as tx:
            meals = tx.collection("meals")
            await meals.add({"id": 1, "name": "Breakfast"})
            with pytest.raises(WriteError):
                await meals.add({"id": 1, "name": "Duplicate"})
            await meals.add({"id": 2, "name": "Lunch"})

        names = [m["name"] for m in await db.get_all("meals")]
        assert names == ["Breakfast", "Lunch"]

    async def test_clear_and_count(self, db: Database) -> None:
        async with db.transaction("meals", TransactionMode.READ_WRITE) as tx:
            meals = tx.collection("meals")
            for name in ("Breakfast", "Lunch", "Dinner"):
                await meals.put({"name": name})
            assert await meals.count() == 3
            await meals.clear()
            assert await meals.count() == 0

    async def test_transactions_are_serialized(self, db: Database) -> None:
        """A second transaction waits for the first to commit."""
        order: list[str] = []

        async def writer() -> None:
            async with db.transaction("meals", TransactionMode.READ_WRITE) as tx:
                order.append("write-start")
                await tx.collection("meals").put({"name": "Breakfast"})
                await asyncio.sleep(0.02)
                order.append("write-end")

        async def reader() -> int:
            await asyncio.sleep(0.005)
            async with db.transaction("meals") as tx:
                order.append("read")
                return await tx.collection("meals").count()

        _, seen = await asyncio.gather(writer(), reader())

        assert order == ["write-start", "write-end", "read"]
        assert seen == 1

    async def test_index_handle_in_transaction(self, db: Database) -> None:
        async with db.transaction("foodList", TransactionMode.READ_WRITE) as tx:
            foods = tx.collection("foodList")
            await foods.put({"name": "Oats", "brand": "Acme"})
            await foods.put({"name": "Milk", "brand": "Acme"})

            # Uncommitted writes are visible inside the same transaction.
            assert await foods.index("brand").count("Acme") == 2


class _StalledConnection:
    """Connection stand-in whose statements never finish."""

    async def execute(self, sql: str, params: object = ()) -> None:
        await asyncio.sleep(10)


class TestTimeouts:
    async def test_waiting_for_a_busy_database_times_out(self, events: EventBus) -> None:
        """A second transaction gives up after the operation timeout."""
        async with Database(":memory:", events=events, timeout=0.05) as db:
            async with db.transaction("diary"):
                with pytest.raises(TransactionTimeoutError):
                    await db.get_one(1, "diary")
                with pytest.raises(TransactionTimeoutError):
                    await db.collection("diary").count()

            # The coordinator is usable again once the first transaction ends.
            assert await db.count("diary") == 0

    async def test_write_while_busy_is_write_error(self, events: EventBus) -> None:
        async with Database(":memory:", events=events, timeout=0.05) as db:
            async with db.transaction("diary"):
                with pytest.raises(WriteError):
                    await db.upsert({"name": "Oats"}, "diary")

    async def test_stalled_statement_times_out(self) -> None:
        tx = Transaction(
            _StalledConnection(),  # type: ignore[arg-type]
            {"diary": DEFAULT_SCHEMA.get("diary")},
            TransactionMode.READ,
            timeout=0.01,
        )

        with pytest.raises(TransactionTimeoutError):
            await tx.collection("diary").count()
