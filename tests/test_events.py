"""Tests for the EventBus notification sink."""

from __future__ import annotations

import pytest

from larder.core.events import (
    Event,
    EventBus,
    SnapshotExportedEvent,
    SnapshotImportFailedEvent,
    WriteFailedEvent,
    topic_matches,
)


class TestEventBus:
    async def test_exact_and_wildcard_subscriptions(self) -> None:
        bus = EventBus()
        exact: list[Event] = []
        snapshots: list[Event] = []
        everything: list[Event] = []

        async def on_exact(event: Event) -> None:
            exact.append(event)

        async def on_snapshot(event: Event) -> None:
            snapshots.append(event)

        async def on_any(event: Event) -> None:
            everything.append(event)

        await bus.subscribe("snapshot.exported", on_exact)
        await bus.subscribe("snapshot.*", on_snapshot)
        await bus.subscribe("*", on_any)

        assert await bus.publish(SnapshotExportedEvent(path="a.json")) == 3
        assert await bus.publish(WriteFailedEvent(collection="diary")) == 1

        assert len(exact) == 1
        assert len(snapshots) == 1
        assert len(everything) == 2

    async def test_failing_handler_is_isolated(self) -> None:
        bus = EventBus()
        seen: list[Event] = []

        async def broken(event: Event) -> None:
            raise RuntimeError("handler bug")

        async def working(event: Event) -> None:
            seen.append(event)

        await bus.subscribe("snapshot.import_failed", broken)
        await bus.subscribe("snapshot.import_failed", working)

        called = await bus.publish(SnapshotImportFailedEvent(path="x", error="bad"))

        assert called == 1
        assert len(seen) == 1

    async def test_unsubscribe(self) -> None:
        bus = EventBus()

        async def handler(event: Event) -> None:
            pass

        await bus.subscribe("database.opened", handler)
        assert await bus.unsubscribe("database.opened", handler)
        assert not await bus.unsubscribe("database.opened", handler)

    def test_to_dict(self) -> None:
        event = WriteFailedEvent(collection="diary", operation="delete", error="locked")
        assert event.to_dict() == {
            "type": "store.write_failed",
            "collection": "diary",
            "operation": "delete",
            "error": "locked",
        }


@pytest.mark.parametrize(
    ("pattern", "event_type", "expected"),
    [
        ("*", "database.opened", True),
        ("snapshot.*", "snapshot.record_failed", True),
        ("snapshot.*", "store.write_failed", False),
        ("snapshot.exported", "snapshot.export_failed", False),
        ("snapshot", "snapshot.exported", False),
    ],
)
def test_topic_matches(pattern: str, event_type: str, expected: bool) -> None:
    assert topic_matches(pattern, event_type) is expected
