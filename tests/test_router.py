import asyncio

import pytest
import pytest_asyncio

from conftest import wait_for
from sessionmux.bus.events import EVENT_INBOUND_MESSAGE, InboundMessage
from sessionmux.errors import NotInitializedError, SessionNotFoundError
from sessionmux.listener import router as router_module
from sessionmux.listener.router import InboundRouter
from sessionmux.listener.users import UserCache
from sessionmux.responder.keyword import KeywordResponder
from sessionmux.session.registry import SessionRegistry

SENDER = "5491122334455@c.us"


def payload(body: str = "hola", **extra) -> dict:
    data = {"id": "m1", "from": SENDER, "body": body, "type": "chat", "pushName": "Ana"}
    data.update(extra)
    return data


@pytest_asyncio.fixture
async def registry(store):
    registry = SessionRegistry(store)
    await registry.initialize()
    return registry


@pytest_asyncio.fixture
async def router(config, supervisor, dispatcher, store, bus, registry):
    router = InboundRouter(
        config.listener,
        supervisor,
        dispatcher,
        store,
        bus,
        registry=registry,
        responder=KeywordResponder(),
    )
    await router.initialize()
    await supervisor.create_session("s1_")
    await registry.create("s1_")
    yield router
    await router.destroy()


@pytest_asyncio.fixture
async def delivering(bus):
    task = asyncio.create_task(bus.dispatch_notifications())
    yield bus
    bus.stop()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def test_should_process_filters(config, bus):
    router = InboundRouter(config.listener, None, None, None, bus)

    assert router.should_process(InboundMessage.from_payload("s1_", payload()))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(broadcast=True)))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(chatId="123-456@g.us")))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(isGroupMsg=True)))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(chatId="status@broadcast")))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(type="image")))


def test_filters_are_independently_togglable(config, bus):
    config.listener.ignore_groups = False
    config.listener.text_only = False
    router = InboundRouter(config.listener, None, None, None, bus)

    assert router.should_process(InboundMessage.from_payload("s1_", payload(chatId="123-456@g.us")))
    assert router.should_process(InboundMessage.from_payload("s1_", payload(type="ptt")))
    assert not router.should_process(InboundMessage.from_payload("s1_", payload(broadcast=True)))


@pytest.mark.asyncio
async def test_start_listening_requires_known_session(config, supervisor, dispatcher, store, bus):
    router = InboundRouter(config.listener, supervisor, dispatcher, store, bus)
    with pytest.raises(NotInitializedError):
        await router.start_listening("s1_")
    await router.initialize()
    with pytest.raises(SessionNotFoundError):
        await router.start_listening("ghost")


@pytest.mark.asyncio
async def test_message_is_persisted_and_user_created(router, store, registry):
    assert await router.start_listening("s1_") is True
    assert await router.start_listening("s1_") is False

    assert await router.handle_message("s1_", payload()) is True

    messages = await store.query("messages")
    assert messages[0]["phone"] == "5491122334455"
    assert messages[0]["direction"] == "inbound"

    user = await store.get("users", "5491122334455")
    assert user["name"] == "Ana"
    assert "user_5491122334455" in router.users

    conversation = await store.query("conversations")
    assert [(c["role"], c["content"]) for c in conversation] == [("user", "hola")]
    assert registry.get("s1_")["stats"]["total_messages_received"] == 1


@pytest.mark.asyncio
async def test_filtered_and_unlistened_messages_are_skipped(router, store):
    assert await router.handle_message("s1_", payload()) is False

    await router.start_listening("s1_", {"save_messages": False, "save_conversations": False})
    assert await router.handle_message("s1_", payload(broadcast=True)) is False
    assert await router.handle_message("s1_", payload()) is True

    assert await store.query("messages") == []
    assert await store.query("conversations") == []
    assert router.stats()["messages_filtered"] == 1


@pytest.mark.asyncio
async def test_auto_response_goes_out_through_dispatcher(router, transport, store, bus):
    await router.start_listening("s1_", {"ai_enabled": True})
    await router.handle_message("s1_", payload("hola, buenas tardes"))

    assert len(transport.sent) == 1
    session_id, recipient, body = transport.sent[0]
    assert (session_id, recipient) == ("s1_", SENDER)
    assert body.startswith("¡Hola!")

    roles = [c["role"] for c in await store.query("conversations", order_by="created_at_ms")]
    assert roles == ["user", "assistant"]
    assert bus.recent("auto_response_sent", "s1_")
    assert router.get_active_listeners()[0]["responses_generated"] == 1


@pytest.mark.asyncio
async def test_no_response_when_generator_returns_none(router, transport):
    await router.start_listening("s1_", {"ai_enabled": True})
    await router.handle_message("s1_", payload("quiero saber del envío"))
    assert transport.sent == []


@pytest.mark.asyncio
async def test_auto_responses_are_rate_limited(config, router, transport):
    router.response_limiter.limit = 1
    await router.start_listening("s1_", {"ai_enabled": True})
    await router.handle_message("s1_", payload("hola"))
    await router.handle_message("s1_", payload("hola otra vez", id="m2"))
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_history_is_bounded(config, router):
    config.listener.ai_max_history = 3
    await router.start_listening("s1_")
    for i in range(5):
        await router.handle_message("s1_", payload(f"msg {i}", id=f"m{i}"))

    history = await router.conversation_history("s1_", "5491122334455")
    assert [h["content"] for h in history] == ["msg 2", "msg 3", "msg 4"]


@pytest.mark.asyncio
async def test_inbound_events_flow_from_transport(router, transport, store):
    await router.start_listening("s1_")
    await transport.emit(EVENT_INBOUND_MESSAGE, "s1_", payload())
    assert await wait_for(lambda: router.stats()["messages_processed"] == 1)


@pytest.mark.asyncio
async def test_stop_listening_keeps_user_cache(router):
    await router.start_listening("s1_")
    await router.handle_message("s1_", payload())

    assert await router.stop_listening("s1_") is True
    assert await router.stop_listening("s1_") is False
    assert router.get_active_listeners() == []
    assert len(router.users) == 1


def test_user_cache_evicts_oldest_inserted():
    now = {"ms": 0}
    cache = UserCache(ttl_ms=1_000, max_size=2, clock=lambda: now["ms"])
    cache.put("a", {"n": 1})
    cache.put("b", {"n": 2})
    cache.get("a")
    cache.put("c", {"n": 3})

    assert "a" not in cache
    assert cache.get("b") == {"n": 2}
    assert cache.get("c") == {"n": 3}


def test_user_cache_ttl():
    now = {"ms": 0}
    cache = UserCache(ttl_ms=1_000, max_size=10, clock=lambda: now["ms"])
    cache.put("a", {"n": 1})
    now["ms"] = 999
    assert cache.get("a") is not None
    now["ms"] = 1_000
    assert cache.get("a") is None
    assert len(cache) == 0
    assert cache.stats()["hits"] == 1


@pytest.mark.asyncio
async def test_listener_resumes_when_session_is_recreated(delivering, router, supervisor):
    await router.start_listening("s1_", {"ai_enabled": True})
    await supervisor.close_session("s1_")
    assert await wait_for(lambda: not router.is_listening("s1_"))

    await supervisor.create_session("s1_")
    assert await wait_for(lambda: router.is_listening("s1_"))
    assert router.get_active_listeners()[0]["ai_enabled"] is True


@pytest.mark.asyncio
async def test_remembered_listeners_are_bounded(monkeypatch, delivering, router, supervisor):
    monkeypatch.setattr(router_module, "MAX_REMEMBERED_LISTENERS", 2)
    for session_id in ("s2_", "s3_"):
        await supervisor.create_session(session_id)
    for session_id in ("s1_", "s2_", "s3_"):
        await router.start_listening(session_id)
        await supervisor.close_session(session_id)
    assert await wait_for(lambda: router.get_active_listeners() == [])

    assert list(router._remembered) == ["s2_", "s3_"]
    router.forget("s2_")
    assert list(router._remembered) == ["s3_"]


@pytest.mark.asyncio
async def test_average_response_time(config, router):
    config.listener.response_delay_ms = 20
    assert router.stats()["average_response_time_ms"] == 0.0

    await router.start_listening("s1_", {"ai_enabled": True})
    await router.handle_message("s1_", payload("hola"))

    assert router.stats()["average_response_time_ms"] >= 15
    assert router.get_active_listeners()[0]["average_response_time_ms"] >= 15
