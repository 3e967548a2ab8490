"""
Bridge 传输层 - 通过 WebSocket 连接到 WhatsApp Bridge 服务，在一条连接上复用多个会话。

Bridge 是独立运行的 Node.js 进程，负责与 WhatsApp Web 协议交互。
Python 端通过 WebSocket 与其交换 JSON 消息，每条消息都带 session 字段标识所属会话。

消息协议（Python → Bridge）：
- auth：   {"type": "auth", "token": "..."}
- connect：{"type": "connect", "requestId", "session", "options"}
- send：   {"type": "send", "requestId", "session", "to", "text"}
- close：  {"type": "close", "session"}

消息协议（Bridge → Python）：
- qr：     {"type": "qr", "session", "base64", "ascii", "url", "attempts"}
- status： {"type": "status", "session", "status"}（connected / disconnected / ...）
- message：{"type": "message", "session", "id", "from", "chatId", "body", "type" ...}
- ack：    {"type": "ack", "requestId", "ok", "id", "error"}
- error：  {"type": "error", "session", "requestId", "error"}

Bridge 连接断开后自动重连（5 秒间隔），断线期间所有挂起的请求立即失败。
"""

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any

import websockets
from loguru import logger

from sessionmux.bus.events import (
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_INBOUND_MESSAGE,
    EVENT_PAIRING,
    EVENT_STATE_CHANGE,
)
from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import TransportConfig
from sessionmux.errors import TransportConnectionError, TransportError
from sessionmux.transport.base import TransportAdapter

RECONNECT_DELAY_S = 5


@dataclass
class BridgeHandle:
    """Bridge 会话句柄。"""

    session_id: str
    closed: bool = False


class BridgeTransport(TransportAdapter):
    """
    基于 WhatsApp Bridge 的传输层适配器。

    参数:
        config: 传输层配置（bridge_url、bridge_token、connect_timeout_ms）
        bus: 事件总线
    """

    name = "bridge"

    def __init__(self, config: TransportConfig, bus: EventBus):
        super().__init__(bus)
        self.config = config
        self._ws = None
        self._running = False
        self._ready = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._pending_connects: dict[str, asyncio.Future] = {}
        self._pending_requests: dict[str, asyncio.Future] = {}

    @property
    def is_connected(self) -> bool:
        return self._ready.is_set()

    async def start(self) -> None:
        """启动 Bridge 连接循环（后台任务）。重复调用无副作用。"""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        bridge_url = self.config.bridge_url
        logger.info(f"Connecting to WhatsApp bridge at {bridge_url}...")

        while self._running:
            try:
                async with websockets.connect(bridge_url) as ws:
                    self._ws = ws
                    if self.config.bridge_token:
                        await ws.send(json.dumps({"type": "auth", "token": self.config.bridge_token}))
                    self._ready.set()
                    logger.info("Connected to WhatsApp bridge")

                    async for message in ws:
                        try:
                            await self._handle_bridge_message(message)
                        except Exception as e:
                            logger.error(f"Error handling bridge message: {e}")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"WhatsApp bridge connection error: {e}")
            finally:
                self._ready.clear()
                self._ws = None
                self._fail_pending(TransportConnectionError("Bridge connection lost"))

            if self._running:
                logger.info(f"Reconnecting to bridge in {RECONNECT_DELAY_S} seconds...")
                await asyncio.sleep(RECONNECT_DELAY_S)

    def _fail_pending(self, error: Exception) -> None:
        for future in list(self._pending_connects.values()) + list(self._pending_requests.values()):
            if not future.done():
                future.set_exception(error)
        self._pending_connects.clear()
        self._pending_requests.clear()

    async def _send_json(self, payload: dict[str, Any]) -> None:
        timeout_s = self.config.connect_timeout_ms / 1000
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise TransportConnectionError("WhatsApp bridge is not connected")
        if self._ws is None:
            raise TransportConnectionError("WhatsApp bridge is not connected")
        await self._ws.send(json.dumps(payload))

    async def connect(self, session_id: str, options: dict[str, Any]) -> BridgeHandle:
        """
        请求 Bridge 打开会话，等待 status=connected。

        等待期间 Bridge 会推送 qr 事件，调用方通过 pairing 事件拿到配对码。
        """
        await self.start()

        if session_id in self._pending_connects:
            raise TransportConnectionError(f"Connect already in progress for {session_id}", session_id=session_id)

        future = asyncio.get_running_loop().create_future()
        self._pending_connects[session_id] = future
        try:
            await self._send_json({
                "type": "connect",
                "requestId": uuid.uuid4().hex,
                "session": session_id,
                "options": options,
            })
            await asyncio.wait_for(future, timeout=self.config.connect_timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TransportConnectionError(f"Timed out connecting session {session_id}", session_id=session_id)
        finally:
            self._pending_connects.pop(session_id, None)

        return BridgeHandle(session_id=session_id)

    async def send_text(self, handle: BridgeHandle, recipient: str, body: str) -> dict[str, Any]:
        """发送文本并等待 Bridge 的 ack。超时由调用方控制。"""
        if handle.closed:
            raise TransportError(f"Session {handle.session_id} handle is closed", session_id=handle.session_id)

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future
        try:
            await self._send_json({
                "type": "send",
                "requestId": request_id,
                "session": handle.session_id,
                "to": recipient,
                "text": body,
            })
            return await future
        finally:
            self._pending_requests.pop(request_id, None)

    async def close(self, handle: BridgeHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if self._ws is not None:
            await self._ws.send(json.dumps({"type": "close", "session": handle.session_id}))

    async def shutdown(self) -> None:
        """停止重连循环，关闭 WebSocket，挂起的请求全部失败。"""
        self._running = False
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._ready.clear()
        self._fail_pending(TransportConnectionError("Bridge transport shut down"))

    async def _handle_bridge_message(self, raw: str) -> None:
        """按 type 字段分发 Bridge 推送的消息。"""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {raw[:100]}")
            return

        msg_type = data.get("type")
        session_id = data.get("session")

        if msg_type == "ack":
            future = self._pending_requests.get(data.get("requestId"))
            if future is None or future.done():
                return
            if data.get("ok", True):
                future.set_result({"id": data.get("id"), "ack": True, "timestamp": data.get("timestamp")})
            else:
                future.set_exception(TransportError(data.get("error") or "Send rejected by bridge", session_id=session_id))

        elif msg_type == "qr" and session_id:
            logger.info(f"Pairing code received for session {session_id}")
            await self.emit(EVENT_PAIRING, session_id, {
                "base64": data.get("base64") or data.get("qr"),
                "ascii": data.get("ascii"),
                "url": data.get("url"),
                "attempts": data.get("attempts", 1),
            })

        elif msg_type == "status" and session_id:
            status = data.get("status")
            logger.info(f"Bridge session {session_id} status: {status}")
            if status == "connected":
                future = self._pending_connects.get(session_id)
                if future is not None and not future.done():
                    future.set_result(True)
                await self.emit(EVENT_CONNECTED, session_id, {"info": data.get("info") or {}})
            else:
                await self.emit(EVENT_STATE_CHANGE, session_id, {"state": status})

        elif msg_type == "message" and session_id:
            payload = {k: v for k, v in data.items() if k not in ("type", "session")}
            payload["type"] = data.get("messageType") or data.get("msgType") or "chat"
            await self.emit(EVENT_INBOUND_MESSAGE, session_id, payload)

        elif msg_type == "error":
            error = data.get("error") or "unknown bridge error"
            logger.error(f"WhatsApp bridge error ({session_id}): {error}")
            request = self._pending_requests.get(data.get("requestId"))
            if request is not None and not request.done():
                request.set_exception(TransportError(error, session_id=session_id))
                return
            connect = self._pending_connects.get(session_id) if session_id else None
            if connect is not None and not connect.done():
                connect.set_exception(TransportConnectionError(error, session_id=session_id))
            if session_id:
                await self.emit(EVENT_ERROR, session_id, {"error": error})
