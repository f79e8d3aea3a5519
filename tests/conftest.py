"""Shared fixtures for the Larder test suite."""

from __future__ import annotations

from typing import AsyncIterator

import pytest

from larder.core.events import Event, EventBus
from larder.core.store import Database


@pytest.fixture
def events() -> EventBus:
    """A private event bus so tests never see each other's notifications."""
    return EventBus()


@pytest.fixture
async def received(events: EventBus) -> list[Event]:
    """Every event published on `events`, in order."""
    seen: list[Event] = []

    async def record(event: Event) -> None:
        seen.append(event)

    await events.subscribe("*", record)
    return seen


@pytest.fixture
async def db(events: EventBus) -> AsyncIterator[Database]:
    """An open in-memory database with the default schema."""
    database = Database(":memory:", events=events, timeout=5.0)
    await database.open()
    yield database
    await database.close()
