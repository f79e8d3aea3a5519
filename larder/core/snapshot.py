"""
Whole-database snapshot export and import.

A snapshot is one JSON object keyed by collection name; each value is the list
of that collection's records in primary-key order:

    {"log": [...], "foodList": [...], "diary": [...], "meals": [...]}

`datetime` values are written as ISO-8601 strings. On import, each
collection's temporal fields (see `CollectionSchema.temporal_fields`) are
parsed back into `datetime` before the record is added.

Import is ordered so a bad file cannot destroy data: the whole document is
read, parsed and validated before the first collection is cleared. After that,
failures are record-scoped: a record that cannot be added is reported and its
siblings (and other collections) carry on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from larder.core.db.codec import coerce_temporal_fields, dumps_snapshot
from larder.core.db.models import DatabaseSchema, Record
from larder.core.db.transaction import CollectionHandle, CompletionBarrier, TransactionMode
from larder.core.errors import ParseError, SnapshotFileError, StoreError
from larder.core.events import (
    SnapshotExportedEvent,
    SnapshotExportFailedEvent,
    SnapshotImportedEvent,
    SnapshotImportFailedEvent,
    SnapshotRecordFailedEvent,
)
from larder.core.store import Database

logger = logging.getLogger(__name__)

Snapshot = dict[str, list[Record]]


@dataclass(frozen=True, slots=True)
class ExportResult:
    path: Path
    ok: bool
    counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RecordFailure:
    """One snapshot record that was not added."""

    collection: str
    index: int  # position in the snapshot's array
    error: str


@dataclass
class ImportReport:
    """Outcome of a completed import."""

    path: Path | None = None
    added: dict[str, int] = field(default_factory=dict)
    failures: list[RecordFailure] = field(default_factory=list)
    # Declared collections left untouched (absent or empty in the snapshot).
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed(self) -> int:
        return len(self.failures)


# =============================================================================
# Export
# =============================================================================


async def collect_snapshot(db: Database) -> Snapshot:
    """
    Scan every declared collection inside one shared read transaction.

    Collections are scanned concurrently; the result is only assembled once
    every scan has finished.
    """
    names = db.collection_names
    collected: dict[str, list[Record]] = {}

    async with db.transaction(names) as tx:

        async def scan(name: str) -> None:
            collected[name] = [record async for record in tx.collection(name).iterate()]

        barrier = CompletionBarrier(len(names))
        for name in names:
            barrier.spawn(scan(name))
        outcome = await barrier.wait(db.timeout)

    if not outcome.ok:
        raise outcome.errors[0]
    if len(collected) != len(names):
        raise StoreError(f"Scanned {len(collected)} of {len(names)} collections")

    return {name: collected[name] for name in names}


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


async def export_snapshot(
    db: Database,
    path: str | Path,
    *,
    indent: int | None = None,
) -> ExportResult:
    """
    Write every collection to `path` as one JSON document.

    Any existing file is overwritten. Failures are logged and published as
    `snapshot.export_failed`; they are reported in the result, not raised.
    """
    path = Path(path)

    try:
        snapshot = await collect_snapshot(db)
        text = dumps_snapshot(snapshot, indent=indent)
        await asyncio.to_thread(_write_text, path, text)
    except (StoreError, OSError, TypeError, ValueError) as exc:
        logger.error("Snapshot export to %s failed: %s", path, exc)
        await db.events.publish(SnapshotExportFailedEvent(path=str(path), error=str(exc)))
        return ExportResult(path=path, ok=False, error=str(exc))

    counts = {name: len(records) for name, records in snapshot.items()}
    logger.info("Snapshot exported to %s (%d records)", path, sum(counts.values()))
    await db.events.publish(SnapshotExportedEvent(path=str(path), counts=counts))
    return ExportResult(path=path, ok=True, counts=counts)


# =============================================================================
# Import
# =============================================================================


def parse_snapshot(text: str, schema: DatabaseSchema) -> Snapshot:
    """
    Parse and structurally validate a snapshot document.

    Raises ParseError unless the document is an object whose declared
    collections map to arrays of objects. Keys that are not declared
    collections are ignored.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Snapshot is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise ParseError("Snapshot must be a JSON object keyed by collection name")

    snapshot: Snapshot = {}
    for name, records in document.items():
        if name not in schema:
            logger.warning("Ignoring unknown collection %r in snapshot", name)
            continue
        if not isinstance(records, list):
            raise ParseError(f"Snapshot entry {name!r} must be an array of records")
        for i, record in enumerate(records):
            if not isinstance(record, dict):
                raise ParseError(f"Snapshot record {name}[{i}] is not an object")
        snapshot[name] = records

    return snapshot


async def restore_snapshot(db: Database, snapshot: Snapshot) -> ImportReport:
    """
    Replace collection contents with a parsed snapshot.

    Every declared collection with at least one record is cleared and refilled
    with strict inserts inside one read-write transaction. The call returns
    once every such collection has finished adding all of its records.
    """
    report = ImportReport()
    prepared: dict[str, list[tuple[int, Record]]] = {}

    for collection in db.schema.collections:
        records = snapshot.get(collection.name)
        if not records:
            report.skipped.append(collection.name)
            continue

        items: list[tuple[int, Record]] = []
        for i, raw in enumerate(records):
            try:
                items.append((i, coerce_temporal_fields(collection, raw)))
            except ValueError as exc:
                report.failures.append(
                    RecordFailure(collection.name, i, f"Invalid timestamp: {exc}")
                )
        prepared[collection.name] = items

    if not prepared:
        logger.info("Snapshot has no records; nothing imported")
        return report

    async def add_record(store: CollectionHandle, index: int, record: Record) -> None:
        try:
            await store.add(record)
        except StoreError as exc:
            logger.warning("Could not import %s[%d]: %s", store.name, index, exc)
            report.failures.append(RecordFailure(store.name, index, str(exc)))
            raise

    async with db.transaction(db.collection_names, TransactionMode.READ_WRITE) as tx:

        async def restore_collection(name: str, items: list[tuple[int, Record]]) -> None:
            store = tx.collection(name)
            await store.clear()

            barrier = CompletionBarrier(len(items))
            for index, record in items:
                barrier.spawn(add_record(store, index, record))
            outcome = await barrier.wait(db.timeout)

            report.added[name] = outcome.succeeded
            logger.debug(
                "Imported %d/%d records into %s", outcome.succeeded, len(items), name
            )

        collections_done = CompletionBarrier(len(prepared))
        for name, items in prepared.items():
            collections_done.spawn(restore_collection(name, items))
        outcome = await collections_done.wait(db.timeout)

        # A collection that could not be cleared or awaited aborts the import.
        if not outcome.ok:
            raise outcome.errors[0]

    report.failures.sort(key=lambda f: (f.collection, f.index))
    return report


async def _import_failed(db: Database, path: Path, exc: Exception) -> None:
    logger.error("Snapshot import from %s failed: %s", path, exc)
    await db.events.publish(SnapshotImportFailedEvent(path=str(path), error=str(exc)))


async def import_snapshot(db: Database, path: str | Path) -> ImportReport:
    """
    Read, validate and restore the snapshot at `path`.

    Raises SnapshotFileError if the file cannot be read and ParseError if it
    is malformed (in both cases nothing was changed), or a StoreError if the
    restore transaction itself fails. Every outcome is published on the
    database's event bus.
    """
    path = Path(path)

    try:
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
    except UnicodeDecodeError as exc:
        error: StoreError = ParseError(f"Snapshot is not UTF-8 text: {exc}")
        await _import_failed(db, path, error)
        raise error from exc
    except OSError as exc:
        error = SnapshotFileError(f"Cannot read snapshot {path}: {exc}")
        await _import_failed(db, path, error)
        raise error from exc

    try:
        snapshot = parse_snapshot(text, db.schema)
        report = await restore_snapshot(db, snapshot)
    except StoreError as exc:
        await _import_failed(db, path, exc)
        raise

    report.path = path
    for failure in report.failures:
        await db.events.publish(
            SnapshotRecordFailedEvent(
                collection=failure.collection, index=failure.index, error=failure.error
            )
        )

    logger.info(
        "Snapshot imported from %s (%d records, %d failed)",
        path,
        sum(report.added.values()),
        report.failed,
    )
    await db.events.publish(
        SnapshotImportedEvent(path=str(path), added=dict(report.added), failed=report.failed)
    )
    return report


__all__: list[str] = [
    "ExportResult",
    "ImportReport",
    "RecordFailure",
    "Snapshot",
    "collect_snapshot",
    "export_snapshot",
    "import_snapshot",
    "parse_snapshot",
    "restore_snapshot",
]
