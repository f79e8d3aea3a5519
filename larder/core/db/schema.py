"""
Collection schema + migrations for Larder.

Design notes:
- We use SQLite `PRAGMA user_version` as the schema version.
- Each collection is a table `(pk, data)`; `data` is the JSON-encoded record.
- Secondary indexes are expression indexes on `json_extract(data, '$."field"')`.
- Migrations are additive only: collections and indexes are created when
  missing and never dropped. Existing tables are inspected first, so applying
  the same migration twice is a no-op.
"""

from __future__ import annotations

import logging
from typing import Final

import aiosqlite

from larder.core.db.models import (
    CollectionSchema,
    DatabaseSchema,
    IndexSchema,
    KeyPolicy,
)

logger = logging.getLogger(__name__)

# Bump when you add a collection or index to `DEFAULT_SCHEMA`.
SCHEMA_VERSION: Final[int] = 23

_DATE_TIME: Final = ("dateTime",)


def _indexes(*fields: str) -> tuple[IndexSchema, ...]:
    return tuple(IndexSchema(name=f, field=f) for f in fields)


DEFAULT_SCHEMA: Final[DatabaseSchema] = DatabaseSchema(
    collections=(
        # Daily log: one record per day, keyed by its date.
        CollectionSchema(
            name="log",
            key_field="dateTime",
            key_policy=KeyPolicy.EXPLICIT,
            indexes=_indexes("goals", "nutrition", "weight"),
            temporal_fields=_DATE_TIME,
        ),
        CollectionSchema(
            name="foodList",
            key_field="id",
            key_policy=KeyPolicy.AUTO_INCREMENT,
            indexes=_indexes(
                "dateTime", "name", "brand", "image_url", "portion", "nutrition", "barcode"
            ),
            temporal_fields=_DATE_TIME,
        ),
        # Diary entries copy the food's data; foodId is a plain reference.
        CollectionSchema(
            name="diary",
            key_field="id",
            key_policy=KeyPolicy.AUTO_INCREMENT,
            indexes=_indexes(
                "dateTime",
                "name",
                "brand",
                "portion",
                "quantity",
                "category",
                "category_name",
                "foodId",
                "nutrition",
            ),
            temporal_fields=_DATE_TIME,
        ),
        CollectionSchema(
            name="meals",
            key_field="id",
            key_policy=KeyPolicy.AUTO_INCREMENT,
            indexes=_indexes("dateTime", "name", "foods", "nutrition", "notes"),
            temporal_fields=_DATE_TIME,
        ),
    )
)


def json_path(field: str) -> str:
    """SQL literal for the JSON path of a top-level record field."""
    return f"'$.\"{field}\"'"


def index_expression(field: str) -> str:
    return f"json_extract(data, {json_path(field)})"


async def get_user_version(conn: aiosqlite.Connection) -> int:
    cursor = await conn.execute("PRAGMA user_version;")
    row = await cursor.fetchone()
    return int(row[0]) if row is not None else 0


async def existing_collections(conn: aiosqlite.Connection) -> set[str]:
    cursor = await conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%';"
    )
    return {str(r[0]) for r in await cursor.fetchall()}


async def existing_indexes(conn: aiosqlite.Connection, table: str) -> set[str]:
    cursor = await conn.execute(
        """
        SELECT name FROM sqlite_master
        WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL;
        """,
        (table,),
    )
    return {str(r[0]) for r in await cursor.fetchall()}


async def ensure_schema(
    conn: aiosqlite.Connection,
    schema: DatabaseSchema = DEFAULT_SCHEMA,
    version: int = SCHEMA_VERSION,
) -> int:
    """
    Create or migrate the schema to `version`.

    Returns the version found before migrating (0 for a new database).

    This function assumes `conn` is an open aiosqlite connection in autocommit
    mode (`isolation_level=None`); it manages its own transaction.
    """
    current = await get_user_version(conn)

    if current > version:
        raise RuntimeError(f"Database schema version {current} is newer than requested {version}.")

    if current == version:
        return current

    await conn.execute("BEGIN IMMEDIATE;")
    try:
        await migrate(conn, schema, from_version=current, to_version=version)
        # PRAGMA does not accept bound parameters.
        await conn.execute(f"PRAGMA user_version = {int(version)};")
        await conn.execute("COMMIT;")
    except BaseException:
        await conn.execute("ROLLBACK;")
        raise

    logger.info("Schema migrated from version %d to %d", current, version)
    return current


async def migrate(
    conn: aiosqlite.Connection,
    schema: DatabaseSchema,
    *,
    from_version: int,
    to_version: int,
) -> None:
    """
    Perform an additive migration.

    Every declared collection and index is created if absent and reused
    otherwise. Undeclared tables and indexes are left alone.
    """
    if to_version <= from_version:
        raise RuntimeError(f"No migration path from {from_version} to {to_version}.")

    present = await existing_collections(conn)

    for collection in schema.collections:
        if collection.name in present:
            logger.debug("Reusing collection %s", collection.name)
        else:
            await _create_collection(conn, collection)
            logger.debug("Created collection %s", collection.name)

        indexes = await existing_indexes(conn, collection.name)
        for index in collection.indexes:
            sql_name = collection.index_sql_name(index)
            if sql_name in indexes:
                continue
            await conn.execute(
                f'CREATE INDEX "{sql_name}" ON "{collection.name}" '
                f"({index_expression(index.field)});"
            )
            logger.debug("Created index %s on %s", index.name, collection.name)


async def _create_collection(conn: aiosqlite.Connection, collection: CollectionSchema) -> None:
    if collection.auto_increment:
        await conn.execute(
            f"""
            CREATE TABLE "{collection.name}" (
                pk INTEGER PRIMARY KEY AUTOINCREMENT,
                data TEXT NOT NULL
            )
            """
        )
    else:
        # No declared type: keys keep their own storage class (int/real/text).
        await conn.execute(
            f"""
            CREATE TABLE "{collection.name}" (
                pk NOT NULL PRIMARY KEY,
                data TEXT NOT NULL
            )
            """
        )
