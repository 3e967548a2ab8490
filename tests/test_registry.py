from datetime import datetime, timedelta

import pytest

from sessionmux.errors import DuplicateSessionError, NotInitializedError, SessionNotFoundError
from sessionmux.session.registry import PERSIST_EVERY_MESSAGES, SessionRegistry
from sessionmux.store.memory import MemoryRecordStore


async def _registry(store=None) -> SessionRegistry:
    registry = SessionRegistry(store or MemoryRecordStore())
    await registry.initialize()
    return registry


@pytest.mark.asyncio
async def test_requires_initialize():
    registry = SessionRegistry(MemoryRecordStore())
    with pytest.raises(NotInitializedError):
        await registry.create("s1")


@pytest.mark.asyncio
async def test_create_and_duplicate():
    registry = await _registry()
    record = await registry.create("s1", {"description": "Spring campaign", "tags": ["promo"]})
    assert record["status"] == "created"
    assert record["metadata"]["tags"] == ["promo"]
    assert registry.has("s1")

    with pytest.raises(DuplicateSessionError):
        await registry.create("s1")


@pytest.mark.asyncio
async def test_records_survive_reload():
    store = MemoryRecordStore()
    registry = await _registry(store)
    await registry.create("s1", {"tenant": "acme"})
    await registry.update("s1", status="connected")

    reloaded = await _registry(store)
    assert reloaded.get("s1")["status"] == "connected"
    assert reloaded.get("s1")["metadata"]["tenant"] == "acme"


@pytest.mark.asyncio
async def test_invalid_records_are_skipped_on_load():
    store = MemoryRecordStore()
    await store.put("sessions", "bad", {"session_id": "bad"})
    await store.put("sessions", "worse", {"session_id": "worse", "created_at": "x", "stats": []})
    await store.put("sessions", "good", {"session_id": "good", "created_at": datetime.now().isoformat()})

    registry = SessionRegistry(store)
    assert await registry.initialize() == 1
    assert registry.has("good")


@pytest.mark.asyncio
async def test_update_unknown_raises():
    registry = await _registry()
    with pytest.raises(SessionNotFoundError):
        await registry.update("nope", status="closed")


@pytest.mark.asyncio
async def test_message_counts_persist_every_ten_messages():
    store = MemoryRecordStore()
    registry = await _registry(store)
    await registry.create("s1")

    for _ in range(PERSIST_EVERY_MESSAGES - 1):
        await registry.record_activity("s1", "message_sent")
    assert (await store.get("sessions", "s1"))["stats"]["total_messages"] == 0
    assert registry.get("s1")["stats"]["total_messages"] == PERSIST_EVERY_MESSAGES - 1

    await registry.record_activity("s1", "message_received")
    persisted = (await store.get("sessions", "s1"))["stats"]
    assert persisted["total_messages"] == PERSIST_EVERY_MESSAGES
    assert persisted["total_messages_received"] == 1


@pytest.mark.asyncio
async def test_activity_kinds_update_status():
    registry = await _registry()
    await registry.create("s1")

    await registry.record_activity("s1", "connection_attempt")
    await registry.record_activity("s1", "connection_success")
    assert registry.get("s1")["status"] == "connected"

    await registry.record_activity("s1", "error")
    record = registry.get("s1")
    assert record["status"] == "error"
    assert record["stats"]["errors"] == 1
    assert record["stats"]["connection_attempts"] == 1

    assert await registry.record_activity("s1", "teleport") is False
    assert await registry.record_activity("ghost", "error") is False


@pytest.mark.asyncio
async def test_cleanup_inactive_keeps_connected():
    store = MemoryRecordStore()
    registry = await _registry(store)
    await registry.create("stale")
    await registry.create("live")
    await registry.update("live", status="connected")

    old = (datetime.now() - timedelta(hours=48)).isoformat()
    registry._cache["stale"].last_used = old
    registry._cache["live"].last_used = old

    assert await registry.cleanup_inactive(24) == ["stale"]
    assert registry.has("live")
    assert await store.get("sessions", "stale") is None


@pytest.mark.asyncio
async def test_stats():
    registry = await _registry()
    await registry.create("a")
    await registry.create("b")
    await registry.update("b", status="connected")
    await registry.record_activity("b", "message_sent")

    stats = registry.stats()
    assert stats["total"] == 2
    assert stats["by_status"] == {"created": 1, "connected": 1}
    assert stats["total_messages_sent"] == 1
