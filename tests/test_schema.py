"""
Tests for larder.core.db.schema and opening databases.

These tests verify:
- First open creates every declared collection and index
- Re-opening at the same version is a no-op that keeps data
- Version bumps are additive
- Open failures are reported and raised as OpenError
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest

from larder.core.db.models import CollectionSchema, DatabaseSchema, IndexSchema, KeyPolicy
from larder.core.db.schema import (
    DEFAULT_SCHEMA,
    SCHEMA_VERSION,
    existing_collections,
    existing_indexes,
    get_user_version,
)
from larder.core.errors import OpenError
from larder.core.events import DatabaseOpenedEvent, DatabaseOpenFailedEvent, Event, EventBus
from larder.core.store import open_database


async def _inspect(path: Path) -> tuple[int, dict[str, set[str]]]:
    """Schema version plus {table: {index names}} as SQLite reports them."""
    async with aiosqlite.connect(path) as conn:
        version = await get_user_version(conn)
        tables = await existing_collections(conn)
        return version, {t: await existing_indexes(conn, t) for t in tables}


def _water_schema(*extra_indexes: str) -> DatabaseSchema:
    water = CollectionSchema(
        name="water",
        key_field="id",
        key_policy=KeyPolicy.AUTO_INCREMENT,
        indexes=tuple(IndexSchema(name=f, field=f) for f in ("dateTime", *extra_indexes)),
        temporal_fields=("dateTime",),
    )
    return DatabaseSchema(collections=(*DEFAULT_SCHEMA.collections, water))


class TestMigrations:
    async def test_first_open_creates_schema(self, tmp_path: Path, events: EventBus) -> None:
        path = tmp_path / "larder.sqlite3"

        db = await open_database(path, events=events)
        await db.close()

        version, tables = await _inspect(path)
        assert version == SCHEMA_VERSION
        assert set(DEFAULT_SCHEMA.names) <= set(tables)
        assert "idx_diary__foodId" in tables["diary"]
        assert "idx_log__weight" in tables["log"]
        assert len(tables["foodList"]) == 7

    async def test_reopen_is_idempotent(self, tmp_path: Path, events: EventBus) -> None:
        path = tmp_path / "larder.sqlite3"

        db = await open_database(path, events=events)
        key = await db.upsert({"name": "Oats"}, "foodList")
        await db.close()
        before = await _inspect(path)

        db = await open_database(path, events=events)
        try:
            assert await db.get_one(key, "foodList") == {"name": "Oats", "id": key}
        finally:
            await db.close()

        assert await _inspect(path) == before

    async def test_version_bump_is_additive(self, tmp_path: Path, events: EventBus) -> None:
        path = tmp_path / "larder.sqlite3"

        db = await open_database(path, events=events)
        await db.upsert({"name": "Soup", "dateTime": None}, "diary")
        await db.close()
        _, before = await _inspect(path)

        db = await open_database(
            path, SCHEMA_VERSION + 1, schema=_water_schema("amount"), events=events
        )
        try:
            assert await db.count("diary") == 1
            await db.upsert({"amount": 250}, "water")
            assert await db.index("water", "amount").count(250) == 1
        finally:
            await db.close()

        version, after = await _inspect(path)
        assert version == SCHEMA_VERSION + 1
        assert after["water"] == {"idx_water__dateTime", "idx_water__amount"}
        for table, indexes in before.items():
            assert indexes <= after[table]

    async def test_undeclared_collections_survive(self, tmp_path: Path, events: EventBus) -> None:
        path = tmp_path / "larder.sqlite3"

        db = await open_database(path, SCHEMA_VERSION + 1, schema=_water_schema(), events=events)
        await db.upsert({"amount": 500}, "water")
        await db.close()

        # A later version that no longer declares "water" must not drop it.
        db = await open_database(path, SCHEMA_VERSION + 2, events=events)
        await db.close()

        _, tables = await _inspect(path)
        assert "water" in tables
        async with aiosqlite.connect(path) as conn:
            cursor = await conn.execute('SELECT COUNT(*) FROM "water";')
            assert (await cursor.fetchone())[0] == 1

    async def test_opened_event(
        self, tmp_path: Path, events: EventBus, received: list[Event]
    ) -> None:
        path = tmp_path / "larder.sqlite3"

        db = await open_database(path, events=events)
        await db.close()
        db = await open_database(path, events=events)
        await db.close()

        opened = [e for e in received if isinstance(e, DatabaseOpenedEvent)]
        assert [(e.previous_version, e.version) for e in opened] == [
            (0, SCHEMA_VERSION),
            (SCHEMA_VERSION, SCHEMA_VERSION),
        ]
        assert opened[0].upgraded
        assert not opened[1].upgraded


class TestOpenErrors:
    async def test_downgrade_refused(
        self, tmp_path: Path, events: EventBus, received: list[Event]
    ) -> None:
        path = tmp_path / "larder.sqlite3"
        db = await open_database(path, events=events)
        await db.close()

        with pytest.raises(OpenError):
            await open_database(path, SCHEMA_VERSION - 1, events=events)

        failed = [e for e in received if isinstance(e, DatabaseOpenFailedEvent)]
        assert len(failed) == 1
        assert failed[0].path == str(path)

    async def test_unreachable_path(self, tmp_path: Path, events: EventBus) -> None:
        with pytest.raises(OpenError):
            await open_database(tmp_path / "missing" / "larder.sqlite3", events=events)
