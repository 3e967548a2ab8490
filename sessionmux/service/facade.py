"""
编排门面 - 把配对码缓存、会话注册表、连接监督器、出站调度器、入站路由器
组合成一套完整的多会话生命周期 API。

本类自身不持有会话/队列/缓存等状态，只负责：
1. 按依赖顺序构造并初始化各组件（叶子在前）
2. 通过事件总线的通知把组件串起来（会话连接 → 恢复发送队列，会话关闭 → 丢弃队列 ...）
3. 汇总各组件的统计与健康状态

初始化顺序：
    SessionRegistry → PairingCodeCache → ConnectionSupervisor → OutboundDispatcher → InboundRouter

对外操作（均为协程，读操作除外）：
    create_session / get_session / list_sessions / close_session / reconnect_session
    enqueue_message / send_immediate / get_queue_status / pause_queue / resume_queue / clear_queue
    get_pairing_code / mark_pairing_scanned
    start_listening / stop_listening
    get_stats / get_health

读操作要求已 initialize()，其余操作要求已 start()，否则抛出 NotInitializedError。

【Java 开发者类比】
- 相当于一个 Facade + Spring ApplicationContext：组件装配 + 事件监听器注册
"""

import asyncio
import time
from datetime import datetime
from typing import Any

from loguru import logger

from sessionmux.bus.events import Notification
from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import Config
from sessionmux.connection.supervisor import ConnectionSupervisor
from sessionmux.errors import InvalidIdentifierError, NotInitializedError, SessionMuxError
from sessionmux.listener.router import InboundRouter
from sessionmux.pairing.cache import PairingCodeCache
from sessionmux.responder import create_responder
from sessionmux.responder.base import AutoResponder
from sessionmux.sender.dispatcher import OutboundDispatcher
from sessionmux.session.registry import SessionRegistry
from sessionmux.store import create_store
from sessionmux.store.base import RecordStore
from sessionmux.transport.base import TransportAdapter
from sessionmux.transport.bridge import BridgeTransport
from sessionmux.utils.helpers import is_valid_session_id


class OrchestrationFacade:
    """
    多会话编排门面。

    参数:
        config: 根配置
        transport: 传输层适配器，默认按 config.transport 构造 BridgeTransport
        store: 记录存储，默认按 config.store 构造
        responder: 自动回复生成器，默认按 config.responder 构造
        bus: 事件总线；传入 transport 时默认复用 transport.bus
    """

    def __init__(
        self,
        config: Config,
        transport: TransportAdapter | None = None,
        store: RecordStore | None = None,
        responder: AutoResponder | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.bus = bus or (transport.bus if transport is not None else EventBus())
        self.transport = transport or BridgeTransport(config.transport, self.bus)
        self.store = store or create_store(config.store.kind, config.store_path)
        self.responder = responder if responder is not None else create_responder(config.responder)

        self.registry = SessionRegistry(self.store)
        self.pairing = PairingCodeCache(
            ttl_ms=config.pairing.pairing_code_ttl_ms,
            cleanup_interval_ms=config.pairing.cleanup_interval_ms,
        )
        self.supervisor = ConnectionSupervisor(config.connection, self.transport, self.bus, self.pairing)
        self.dispatcher = OutboundDispatcher(config.sender, self.supervisor, self.bus)
        self.router = InboundRouter(
            config.listener,
            self.supervisor,
            self.dispatcher,
            self.store,
            self.bus,
            registry=self.registry,
            responder=self.responder,
            country_code=config.sender.default_country_code,
        )

        self.is_initialized = False
        self.is_running = False
        self._notify_task: asyncio.Task | None = None
        self._started_at: float | None = None
        self._stats = {
            "sessions_created": 0,
            "messages_sent": 0,
            "messages_received": 0,
            "pairing_codes_generated": 0,
            "errors": 0,
        }

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        按依赖顺序初始化全部组件并注册组件间的通知订阅。

        任何一步失败都会销毁已初始化的组件后重新抛出异常
        （配置非法时为 ConfigurationError）。
        """
        if self.is_initialized:
            logger.warning("Orchestration facade is already initialized")
            return

        logger.info("Initializing orchestration facade...")
        try:
            await self.registry.initialize()
            self.pairing.start()
            await self.supervisor.initialize()
            await self.dispatcher.initialize()
            await self.router.initialize()
        except Exception as e:
            logger.error(f"Orchestration facade initialization failed: {e}")
            await self._cleanup_modules()
            raise

        self._setup_module_events()
        self._notify_task = asyncio.create_task(self.bus.dispatch_notifications())
        self._started_at = time.time()
        self.is_initialized = True
        logger.info("Orchestration facade initialized")

    async def start(self) -> None:
        self._ensure_initialized()
        if self.is_running:
            logger.warning("Orchestration facade is already running")
            return
        self.is_running = True
        logger.info("Orchestration facade started")

    async def stop(self) -> None:
        """停止全部监听并关闭全部会话。组件保持初始化状态，可再次 start()。"""
        if not self.is_running:
            return
        logger.info("Stopping orchestration facade...")
        self.is_running = False
        for listener in self.router.get_active_listeners():
            await self.router.stop_listening(listener["session_id"])
        await self.supervisor.close_all()
        logger.info("Orchestration facade stopped")

    async def destroy(self) -> None:
        """停止服务并销毁所有组件。"""
        if self.is_running:
            await self.stop()
        await self._cleanup_modules()
        self.bus.stop()
        if self._notify_task:
            self._notify_task.cancel()
            try:
                await self._notify_task
            except asyncio.CancelledError:
                pass
            self._notify_task = None
        self.is_initialized = False
        logger.info("Orchestration facade destroyed")

    async def _cleanup_modules(self) -> None:
        """逆序销毁组件，单个组件失败只记录日志。"""
        modules = [
            ("router", self.router.destroy),
            ("dispatcher", self.dispatcher.destroy),
            ("supervisor", self.supervisor.destroy),
            ("registry", self.registry.destroy),
        ]
        for name, destroy in modules:
            try:
                await destroy()
            except Exception as e:
                logger.error(f"Error destroying {name}: {e}")
        self.pairing.destroy()

    def _ensure_initialized(self) -> None:
        if not self.is_initialized:
            raise NotInitializedError("Orchestration facade is not initialized")

    def _ensure_running(self) -> None:
        self._ensure_initialized()
        if not self.is_running:
            raise NotInitializedError("Orchestration facade is not running")

    # ------------------------------------------------------------------
    # 组件联动
    # ------------------------------------------------------------------

    def _setup_module_events(self) -> None:
        self.bus.subscribe("session_connected", self._on_session_connected)
        self.bus.subscribe("session_reconnected", self._on_session_reconnected)
        self.bus.subscribe("session_closed", self._on_session_closed)
        self.bus.subscribe("session_error", self._on_session_error)
        self.bus.subscribe("pairing_generated", self._on_pairing_generated)
        self.bus.subscribe("message_sent", self._on_message_sent)
        self.bus.subscribe("message_failed", self._on_message_failed)
        self.bus.subscribe("message_processed", self._on_message_processed)

    async def _on_session_connected(self, notification: Notification) -> None:
        # 重新连接后恢复积压队列
        self.dispatcher.kick(notification.session_id)

    async def _on_session_reconnected(self, notification: Notification) -> None:
        if self.registry.has(notification.session_id):
            await self.registry.record_activity(notification.session_id, "connection_success")

    async def _on_session_closed(self, notification: Notification) -> None:
        # 同一 ID 已被重建时，旧实例的关闭通知不能波及新会话
        if self.supervisor.is_stale(notification):
            logger.debug(f"Ignoring session_closed for a previous instance of {notification.session_id}")
            return
        session_id = notification.session_id
        await self.dispatcher.forget(session_id)
        if self.registry.has(session_id):
            await self.registry.update(session_id, status="closed")

    async def _on_session_error(self, notification: Notification) -> None:
        self._stats["errors"] += 1
        if self.registry.has(notification.session_id) and not self.supervisor.is_stale(notification):
            await self.registry.record_activity(notification.session_id, "error")

    async def _on_pairing_generated(self, notification: Notification) -> None:
        self._stats["pairing_codes_generated"] += 1
        if self.registry.has(notification.session_id):
            await self.registry.update(notification.session_id, status="qr_ready")

    async def _on_message_sent(self, notification: Notification) -> None:
        self._stats["messages_sent"] += 1
        if self.registry.has(notification.session_id):
            await self.registry.record_activity(notification.session_id, "message_sent")

    async def _on_message_failed(self, notification: Notification) -> None:
        self._stats["errors"] += 1

    async def _on_message_processed(self, notification: Notification) -> None:
        self._stats["messages_received"] += 1

    # ------------------------------------------------------------------
    # 会话
    # ------------------------------------------------------------------

    async def create_session(self, session_id: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        创建会话：建立连接 → 写入会话注册表 → 按需开始监听。

        参数:
            options: 传给连接监督器的选项，另外支持：
                     auto_start_listening（bool）、listener_options（dict）

        返回:
            {session_id, status, metadata, listening_active}
        """
        self._ensure_running()
        opts = dict(options or {})
        auto_listen = opts.pop("auto_start_listening", self.config.listener.auto_start_listening)
        listener_options = opts.pop("listener_options", None)

        if not is_valid_session_id(session_id):
            raise InvalidIdentifierError(
                "Session id must match [A-Za-z0-9_-]{3,50}", session_id=str(session_id)
            )

        logger.info(f"Creating session {session_id}")
        try:
            snapshot = await self.supervisor.create_session(session_id, opts)
        except SessionMuxError:
            self._stats["errors"] += 1
            raise

        await self.registry.get_or_create(session_id, opts.get("metadata"))
        await self.registry.record_activity(session_id, "connection_attempt")
        await self.registry.record_activity(session_id, "connection_success")

        if auto_listen:
            await self.router.start_listening(session_id, listener_options)

        self._stats["sessions_created"] += 1
        return {
            "session_id": session_id,
            "status": snapshot["status"],
            "metadata": snapshot["metadata"],
            "listening_active": self.router.is_listening(session_id),
        }

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        """会话的完整视图：连接、持久化记录、监听、队列、配对码。会话不存在时返回 None。"""
        self._ensure_initialized()
        connection = self.supervisor.get_session(session_id)
        if connection is None:
            return None

        record = self.registry.get(session_id)
        listener = next(
            (item for item in self.router.get_active_listeners() if item["session_id"] == session_id), None
        )
        queue = self.dispatcher.get_queue_status(session_id)
        pairing = self.pairing.get_record(session_id)

        return {
            "session_id": session_id,
            "connection": connection,
            "record": record,
            "listener": {"active": True, **listener} if listener else {"active": False},
            "queue": {
                "size": queue["queue_size"],
                "processing": queue["processing"],
                "paused": queue["paused"],
                "estimated_time_to_complete_ms": queue["estimated_time_to_complete_ms"],
            },
            "pairing": {
                "available": True,
                "attempts": pairing.attempts,
                "scanned": pairing.scanned,
                "expires_at_ms": pairing.expires_at_ms,
            } if pairing else {"available": False},
        }

    def list_sessions(self) -> list[dict[str, Any]]:
        self._ensure_initialized()
        result = []
        for connection in self.supervisor.list_sessions():
            session_id = connection["session_id"]
            record = self.registry.get(session_id)
            result.append({
                "session_id": session_id,
                "status": connection["status"],
                "created_at": connection["created_at"],
                "last_activity_at": connection["last_activity_at"],
                "has_pairing_code": self.pairing.has(session_id),
                "listening_active": self.router.is_listening(session_id),
                "messages_in_queue": self.dispatcher.queue_size(session_id),
                "total_messages": record["stats"]["total_messages"] if record else 0,
            })
        return result

    async def close_session(self, session_id: str) -> bool:
        """
        关闭会话：停止监听 → 丢弃队列 → 清除配对码 → 关闭连接 → 注册表标记 closed。

        幂等：会话不存在时返回 False。
        """
        self._ensure_running()
        if not self.supervisor.has_session(session_id):
            return False

        logger.info(f"Closing session {session_id}")
        await self.router.stop_listening(session_id)
        self.router.forget(session_id)
        await self.dispatcher.forget(session_id)
        self.pairing.clear(session_id)
        closed = await self.supervisor.close_session(session_id)
        if self.registry.has(session_id):
            await self.registry.update(session_id, status="closed")
        return closed

    async def reconnect_session(self, session_id: str) -> bool:
        self._ensure_running()
        try:
            return await self.supervisor.reconnect_session(session_id)
        except SessionMuxError:
            self._stats["errors"] += 1
            raise

    # ------------------------------------------------------------------
    # 消息
    # ------------------------------------------------------------------

    async def enqueue_message(
        self,
        session_id: str,
        to: str,
        body: str,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """排队发送，返回 {message_id, queue_position, estimated_send_time, ...}。"""
        self._ensure_running()
        return await self.dispatcher.enqueue(session_id, to, body, options)

    async def send_immediate(
        self,
        session_id: str,
        to: str,
        body: str,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """立即发送，返回 {message_id, sent_at, ...}。传输层错误直接抛出。"""
        self._ensure_running()
        try:
            return await self.dispatcher.send_immediate(session_id, to, body, options)
        except SessionMuxError:
            self._stats["errors"] += 1
            raise

    def get_queue_status(self, session_id: str) -> dict[str, Any]:
        self._ensure_initialized()
        return self.dispatcher.get_queue_status(session_id)

    def pause_queue(self, session_id: str) -> bool:
        self._ensure_running()
        return self.dispatcher.pause(session_id)

    def resume_queue(self, session_id: str) -> bool:
        self._ensure_running()
        return self.dispatcher.resume(session_id)

    def clear_queue(self, session_id: str, filter: str = "all") -> int:
        self._ensure_running()
        return self.dispatcher.clear(session_id, filter)

    # ------------------------------------------------------------------
    # 配对码
    # ------------------------------------------------------------------

    def get_pairing_code(self, session_id: str, fmt: str = "dataURL") -> dict[str, Any] | None:
        self._ensure_initialized()
        return self.pairing.get(session_id, fmt)

    def mark_pairing_scanned(self, session_id: str) -> bool:
        self._ensure_running()
        marked = self.pairing.mark_scanned(session_id)
        if marked:
            self.bus.emit("pairing_scanned", session_id)
        return marked

    # ------------------------------------------------------------------
    # 监听
    # ------------------------------------------------------------------

    async def start_listening(self, session_id: str, options: dict[str, Any] | None = None) -> bool:
        self._ensure_running()
        return await self.router.start_listening(session_id, options)

    async def stop_listening(self, session_id: str) -> bool:
        self._ensure_running()
        return await self.router.stop_listening(session_id)

    # ------------------------------------------------------------------
    # 统计与健康
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        self._ensure_initialized()
        return {
            "service": {
                "initialized": self.is_initialized,
                "running": self.is_running,
                "started_at": datetime.fromtimestamp(self._started_at).isoformat() if self._started_at else None,
                "uptime_s": round(time.time() - self._started_at, 1) if self._started_at else 0,
                **self._stats,
            },
            "connections": self.supervisor.stats(),
            "messaging": self.dispatcher.stats(),
            "listening": self.router.stats(),
            "pairing": self.pairing.stats(),
            "sessions": self.registry.stats(),
        }

    def get_health(self) -> dict[str, Any]:
        """健康检查。从不抛出异常，未初始化时各计数为 0。"""
        if not self.is_initialized:
            return {
                "status": "stopped",
                "initialized": False,
                "modules": self._module_presence(),
                "active_sessions": 0,
                "total_queued_messages": 0,
                "active_listeners": 0,
                "timestamp": datetime.now().isoformat(),
            }
        return {
            "status": "running" if self.is_running else "stopped",
            "initialized": True,
            "modules": self._module_presence(),
            "active_sessions": self.supervisor.stats()["connected"],
            "total_queued_messages": self.dispatcher.stats()["total_queued"],
            "active_listeners": len(self.router.get_active_listeners()),
            "timestamp": datetime.now().isoformat(),
        }

    def _module_presence(self) -> dict[str, bool]:
        return {
            "registry": self.registry.is_initialized,
            "pairing": self.pairing is not None,
            "supervisor": self.supervisor.is_initialized,
            "dispatcher": self.dispatcher.is_initialized,
            "router": self.router.is_initialized,
        }
