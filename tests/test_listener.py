"""Tests for the entity change listener."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ats_search.common.events import EventSubscriber, EventType
from ats_search.indexer.listener import EntityChangeListener
from ats_search.indexer.reindexer import Reindexer


@pytest.fixture
def subscriber():
    return EventSubscriber("redis://localhost:6379")


@pytest.fixture
def mock_reindexer():
    return MagicMock(spec=Reindexer)


def test_registers_for_entity_changes(subscriber, mock_reindexer):
    listener = EntityChangeListener(mock_reindexer, subscriber)
    assert subscriber.handlers[EventType.ENTITY_CHANGED.value] == [listener.handle_entity_changed]


def test_forwards_events_to_reindexer(subscriber, mock_reindexer):
    EntityChangeListener(mock_reindexer, subscriber)

    subscriber.handle_message({
        "channel": "ats_events:ats.entity.changed.v1",
        "data": '{"source_type": "CANDIDATE", "source_id": "9", "reason": "skill-update", '
                '"changed_fields": ["technical_skills"]}',
    })

    mock_reindexer.on_entity_changed.assert_called_once_with("CANDIDATE", "9", "skill-update", ["technical_skills"])


def test_missing_reason_defaults_to_update(subscriber, mock_reindexer):
    listener = EntityChangeListener(mock_reindexer, subscriber)
    listener.handle_entity_changed({"source_type": "JOB", "source_id": 4, "changed_fields": "title"})
    mock_reindexer.on_entity_changed.assert_called_once_with("JOB", 4, "update", None)


@pytest.mark.parametrize("payload", [{}, {"source_type": "JOB"}, {"source_id": "1"}, {"source_type": "JOB", "source_id": ""}])
def test_malformed_events_are_skipped(subscriber, mock_reindexer, payload):
    listener = EntityChangeListener(mock_reindexer, subscriber)
    listener.handle_entity_changed(payload)
    mock_reindexer.on_entity_changed.assert_not_called()


@pytest.mark.asyncio
async def test_listener_retries_then_gives_up(mock_reindexer):
    subscriber = MagicMock(spec=EventSubscriber)
    subscriber.start_listening = AsyncMock(side_effect=ConnectionError("redis down"))
    subscriber.close = AsyncMock()
    listener = EntityChangeListener(mock_reindexer, subscriber, max_retries=3, base_delay=0.0)

    listener.start()
    await asyncio.wait_for(listener._task, timeout=1.0)

    assert subscriber.start_listening.await_count == 3
    await listener.stop()
    subscriber.close.assert_awaited_once()
