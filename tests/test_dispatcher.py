import asyncio

import pytest
import pytest_asyncio

from conftest import wait_for
from sessionmux.bus.events import EVENT_ERROR
from sessionmux.errors import (
    NotInitializedError,
    QueueFullError,
    RateLimitExceededError,
    SessionNotConnectedError,
    SessionNotFoundError,
    TransportError,
    ValidationError,
)
from sessionmux.sender.dispatcher import MessageStatus, OutboundDispatcher
from sessionmux.sender.ratelimit import RateLimiter


@pytest_asyncio.fixture
async def connected(supervisor):
    await supervisor.create_session("s1_")
    return "s1_"


@pytest.mark.asyncio
async def test_enqueue_requires_initialize(config, supervisor, bus):
    dispatcher = OutboundDispatcher(config.sender, supervisor, bus)
    with pytest.raises(NotInitializedError):
        await dispatcher.enqueue("s1_", "5551234", "hi")


@pytest.mark.asyncio
async def test_enqueue_is_sent(dispatcher, transport, bus, connected):
    result = await dispatcher.enqueue(connected, "5551234", "hi")
    assert result["queue_position"] == 1
    assert result["estimated_delay_ms"] == 10
    assert result["message_id"].startswith("msg_")

    assert await wait_for(lambda: transport.sent == [(connected, "5551234@c.us", "hi")])
    sent = bus.recent("message_sent", connected)
    assert sent[-1].data["message_id"] == result["message_id"]
    assert await wait_for(lambda: dispatcher.queue_size(connected) == 0)
    assert await wait_for(lambda: not dispatcher.get_queue_status(connected)["processing"])


@pytest.mark.asyncio
async def test_high_priority_jumps_ahead_of_normal(dispatcher, transport, connected):
    dispatcher.pause(connected)
    for body in ("n1", "n2", "n3"):
        await dispatcher.enqueue(connected, "5551234", body)
    high = await dispatcher.enqueue(connected, "5551234", "h1", {"priority": "high"})
    assert high["queue_position"] == 1
    high2 = await dispatcher.enqueue(connected, "5551234", "h2", {"priority": "high"})
    assert high2["queue_position"] == 2

    assert dispatcher.resume(connected) is True
    assert await wait_for(lambda: len(transport.sent) == 5)
    assert [body for _, _, body in transport.sent] == ["h1", "h2", "n1", "n2", "n3"]


@pytest.mark.asyncio
async def test_validation(config, dispatcher, connected):
    with pytest.raises(ValidationError):
        await dispatcher.enqueue(connected, "", "hi")
    with pytest.raises(ValidationError):
        await dispatcher.enqueue(connected, "5551234", "   ")
    with pytest.raises(ValidationError):
        await dispatcher.enqueue(connected, "5551234", "x" * (config.sender.max_message_length + 1))
    with pytest.raises(ValidationError):
        await dispatcher.enqueue(connected, "5551234", "hi", {"priority": "urgent"})
    with pytest.raises(SessionNotFoundError):
        await dispatcher.enqueue("ghost", "5551234", "hi")


@pytest.mark.asyncio
async def test_queue_full(config, dispatcher, connected):
    config.sender.max_queue_size = 2
    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "one")
    await dispatcher.enqueue(connected, "5551234", "two")
    with pytest.raises(QueueFullError):
        await dispatcher.enqueue(connected, "5551234", "three")


@pytest.mark.asyncio
async def test_expired_message_is_never_delivered(dispatcher, transport, bus, connected):
    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "stale", {"ttl_ms": 20})
    await asyncio.sleep(0.05)
    dispatcher.resume(connected)

    assert await wait_for(lambda: bool(bus.recent("messages_expired", connected)))
    assert transport.send_attempts == 0
    assert dispatcher.queue_size(connected) == 0
    assert dispatcher.stats()["expired"] == 1


@pytest.mark.asyncio
async def test_message_expiring_during_backoff_is_dropped(config, dispatcher, transport, bus, connected):
    config.sender.retry_base_delay_ms = 100
    transport.send_failures = 1
    await dispatcher.enqueue(connected, "5551234", "late", {"ttl_ms": 50})

    assert await wait_for(lambda: bool(bus.recent("messages_expired", connected)))
    assert transport.send_attempts == 1
    assert transport.sent == []


@pytest.mark.asyncio
async def test_sweep_removes_expired_from_all_queues(dispatcher, connected):
    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "a", {"ttl_ms": 10})
    await dispatcher.enqueue(connected, "5551234", "b")
    await asyncio.sleep(0.03)
    assert dispatcher.sweep_expired() == 1
    assert dispatcher.queue_size(connected) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_marks_failed_once(dispatcher, transport, bus, connected):
    transport.send_failures = 3
    result = await dispatcher.enqueue(connected, "5551234", "hi")

    assert await wait_for(lambda: bool(bus.recent("message_failed", connected)))
    await asyncio.sleep(0.05)
    failures = bus.recent("message_failed", connected)
    assert len(failures) == 1
    assert failures[0].data["message_id"] == result["message_id"]
    assert failures[0].data["attempts"] == 3
    assert transport.send_attempts == 3
    assert transport.sent == []
    assert dispatcher.queue_size(connected) == 0
    assert dispatcher.stats()["failed"] == 1
    assert dispatcher.stats()["retries"] == 2


@pytest.mark.asyncio
async def test_retry_succeeds_without_advancing_queue(dispatcher, transport, connected):
    transport.send_failures = 1
    await dispatcher.enqueue(connected, "5551234", "first")
    await dispatcher.enqueue(connected, "5551234", "second")

    assert await wait_for(lambda: len(transport.sent) == 2)
    assert [body for _, _, body in transport.sent] == ["first", "second"]


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure(dispatcher, transport, bus, connected):
    transport.send_delay = 0.5
    await dispatcher.enqueue(connected, "5551234", "slow", {"timeout_ms": 20, "max_retries": 1})

    assert await wait_for(lambda: bool(bus.recent("message_failed", connected)))
    assert "timed out" in bus.recent("message_failed", connected)[0].data["error"]


def test_retry_delay_is_capped(config, bus):
    dispatcher = OutboundDispatcher(config.sender, None, bus)
    assert dispatcher.retry_delay_ms(1) == 10
    assert dispatcher.retry_delay_ms(2) == 20
    assert dispatcher.retry_delay_ms(3) == 40
    assert dispatcher.retry_delay_ms(10) == config.sender.max_retry_delay_ms


@pytest.mark.asyncio
async def test_drain_stops_when_session_leaves_connected(dispatcher, transport, supervisor, connected):
    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "held")
    await transport.emit(EVENT_ERROR, connected, {"error": "logged out"})
    assert await wait_for(lambda: supervisor.get_session_status(connected) == "error")

    dispatcher.resume(connected)
    await asyncio.sleep(0.03)
    assert transport.send_attempts == 0
    assert dispatcher.queue_size(connected) == 1


@pytest.mark.asyncio
async def test_clear_filters(dispatcher, connected):
    dispatcher.pause(connected)
    for body in ("a", "b", "c"):
        await dispatcher.enqueue(connected, "5551234", body)
    dispatcher._queues[connected][0].status = MessageStatus.FAILED

    with pytest.raises(ValidationError):
        dispatcher.clear(connected, "sent")
    assert dispatcher.clear(connected, "failed") == 1
    assert dispatcher.clear(connected, "pending") == 2
    assert dispatcher.clear(connected, "all") == 0
    assert dispatcher.clear("ghost") == 0


@pytest.mark.asyncio
async def test_pause_and_resume(dispatcher, transport, bus, connected):
    assert dispatcher.pause("ghost") is False
    assert dispatcher.resume(connected) is False

    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "wait")
    await asyncio.sleep(0.03)
    assert transport.sent == []
    status = dispatcher.get_queue_status(connected)
    assert status["paused"] is True
    assert status["queue_size"] == 1
    assert status["pending_messages"][0]["body"] == "wait"

    dispatcher.resume(connected)
    assert await wait_for(lambda: len(transport.sent) == 1)
    assert bus.recent("queue_paused", connected) and bus.recent("queue_resumed", connected)


@pytest.mark.asyncio
async def test_send_immediate(dispatcher, transport, connected):
    result = await dispatcher.send_immediate(connected, "1122334455", "now")
    assert result["recipient"] == "541122334455@c.us"
    assert result["sent_at"]
    assert transport.sent == [(connected, "541122334455@c.us", "now")]

    with pytest.raises(SessionNotFoundError):
        await dispatcher.send_immediate("ghost", "1", "x")


@pytest.mark.asyncio
async def test_send_immediate_surfaces_transport_errors(dispatcher, transport, connected):
    transport.send_failures = 1
    with pytest.raises(TransportError):
        await dispatcher.send_immediate(connected, "5551234", "x")
    assert dispatcher.stats()["failed"] == 1


@pytest.mark.asyncio
async def test_send_immediate_requires_connected(dispatcher, transport, supervisor, connected):
    await transport.emit(EVENT_ERROR, connected, {"error": "boom"})
    assert await wait_for(lambda: supervisor.get_session_status(connected) == "error")
    with pytest.raises(SessionNotConnectedError):
        await dispatcher.send_immediate(connected, "5551234", "x")


@pytest.mark.asyncio
async def test_send_immediate_rate_limit(config, supervisor, transport, bus, connected):
    now = {"ms": 0}
    limiter = RateLimiter(3, clock=lambda: now["ms"])
    dispatcher = OutboundDispatcher(config.sender, supervisor, bus, limiter=limiter)
    await dispatcher.initialize()
    try:
        outcomes = []
        for i in range(4):
            try:
                await dispatcher.send_immediate(connected, "5551234", f"m{i}")
                outcomes.append(True)
            except RateLimitExceededError:
                outcomes.append(False)
        assert outcomes == [True, True, True, False]

        await dispatcher.send_immediate(connected, "5551234", "bypass", {"skip_rate_limit": True})

        now["ms"] = 60_000
        await dispatcher.send_immediate(connected, "5551234", "next window")
        assert len(transport.sent) == 5
    finally:
        await dispatcher.destroy()


@pytest.mark.asyncio
async def test_forget_drops_queue_and_task(dispatcher, connected):
    dispatcher.pause(connected)
    await dispatcher.enqueue(connected, "5551234", "a")
    await dispatcher.forget(connected)
    assert dispatcher.queue_size(connected) == 0
    assert dispatcher.stats()["total_queued"] == 0


@pytest.mark.asyncio
async def test_queued_send_waits_for_rate_window(config, supervisor, transport, bus, connected):
    limiter = RateLimiter(1, window_ms=150)
    dispatcher = OutboundDispatcher(config.sender, supervisor, bus, limiter=limiter)
    await dispatcher.initialize()
    try:
        loop = asyncio.get_running_loop()
        await dispatcher.enqueue(connected, "5551234", "first")
        await dispatcher.enqueue(connected, "5551234", "second")

        assert await wait_for(lambda: len(transport.sent) == 1)
        first_at = loop.time()
        await asyncio.sleep(0.05)
        assert len(transport.sent) == 1
        assert dispatcher.queue_size(connected) == 1

        assert await wait_for(lambda: len(transport.sent) == 2)
        assert loop.time() - first_at >= 0.08
        assert transport.send_attempts == 2
    finally:
        await dispatcher.destroy()


@pytest.mark.asyncio
async def test_closing_session_during_send_stops_drain(dispatcher, supervisor, transport, bus, connected):
    transport.send_delay = 0.05
    await dispatcher.enqueue(connected, "5551234", "in flight")
    await dispatcher.enqueue(connected, "5551234", "never")

    assert await wait_for(lambda: transport.send_attempts == 1)
    await dispatcher.forget(connected)
    await supervisor.close_session(connected)
    await asyncio.sleep(0.1)

    assert transport.send_attempts == 1
    assert transport.sent == []
    assert dispatcher.queue_size(connected) == 0
    assert not bus.recent("message_sent", connected)


@pytest.mark.asyncio
async def test_closing_session_during_backoff_stops_retries(config, dispatcher, supervisor, transport, connected):
    config.sender.retry_base_delay_ms = 50
    transport.send_failures = 1
    await dispatcher.enqueue(connected, "5551234", "retry me")

    assert await wait_for(lambda: transport.send_attempts == 1)
    await supervisor.close_session(connected)
    await asyncio.sleep(0.1)

    assert transport.send_attempts == 1
    assert transport.sent == []
    assert not dispatcher.get_queue_status(connected)["processing"]
