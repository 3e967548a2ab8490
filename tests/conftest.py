import asyncio
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio

from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import Config
from sessionmux.connection.supervisor import ConnectionSupervisor
from sessionmux.pairing.cache import PairingCodeCache
from sessionmux.sender.dispatcher import OutboundDispatcher
from sessionmux.store.memory import MemoryRecordStore
from sessionmux.transport.base import TransportAdapter


@dataclass
class FakeHandle:
    session_id: str
    generation: int


class FakeTransport(TransportAdapter):
    """Scriptable in-process transport: every knob is a plain attribute."""

    name = "fake"

    def __init__(self, bus: EventBus):
        super().__init__(bus)
        self.connect_error: Exception | None = None
        self.connect_delay = 0.0
        self.pair_on_connect = False
        self.send_failures = 0
        self.send_delay = 0.0
        self.close_error: Exception | None = None
        self.close_delay = 0.0
        self.connects: list[str] = []
        self.closed: list[FakeHandle] = []
        self.send_attempts = 0
        self.sent: list[tuple[str, str, str]] = []
        self.shutdown_called = False

    async def connect(self, session_id: str, options: dict[str, Any]) -> FakeHandle:
        self.connects.append(session_id)
        if self.pair_on_connect:
            await self.emit("pairing", session_id, {"base64": "aGVsbG8=", "ascii": "##", "attempts": 1})
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        return FakeHandle(session_id=session_id, generation=len(self.connects))

    async def send_text(self, handle: FakeHandle, recipient: str, body: str) -> dict[str, Any]:
        self.send_attempts += 1
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_failures > 0:
            self.send_failures -= 1
            raise RuntimeError("adapter send failed")
        self.sent.append((handle.session_id, recipient, body))
        return {"id": f"wamid_{len(self.sent)}"}

    async def close(self, handle: FakeHandle) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed.append(handle)
        if self.close_error is not None:
            raise self.close_error

    async def shutdown(self) -> None:
        self.shutdown_called = True


async def wait_for(predicate, *, timeout: float = 2.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def config(tmp_path) -> Config:
    config = Config()
    config.connection.sessions_path = str(tmp_path / "tokens")
    config.connection.max_sessions = 5
    config.connection.reconnect_delay_ms = 10
    config.connection.max_reconnect_attempts = 2
    config.sender.inter_message_delay_ms = 10
    config.sender.retry_base_delay_ms = 10
    config.sender.retry_multiplier = 2.0
    config.sender.max_retry_delay_ms = 100
    config.sender.message_timeout_ms = 200
    config.sender.max_retries = 3
    config.listener.response_delay_ms = 0
    config.store.kind = "memory"
    config.store.path = str(tmp_path / "data")
    config.responder.kind = "none"
    return config


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def transport(bus) -> FakeTransport:
    return FakeTransport(bus)


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def pairing() -> PairingCodeCache:
    return PairingCodeCache(ttl_ms=60_000)


@pytest_asyncio.fixture
async def supervisor(config, transport, bus, pairing):
    supervisor = ConnectionSupervisor(config.connection, transport, bus, pairing)
    await supervisor.initialize()
    yield supervisor
    await supervisor.destroy()


@pytest_asyncio.fixture
async def dispatcher(config, supervisor, bus):
    dispatcher = OutboundDispatcher(config.sender, supervisor, bus)
    await dispatcher.initialize()
    yield dispatcher
    await dispatcher.destroy()
