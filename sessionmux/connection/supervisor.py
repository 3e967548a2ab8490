"""
连接监督器 - 管理所有存活会话的连接、状态机与重连策略。

本模块是 sessionmux 的核心：
- 独占每个会话的传输层句柄（其他组件只能通过 send_through_handle 发送）
- 维护会话状态机，消费传输层事件驱动状态变化
- 把 pairing 事件写入配对码缓存
- 把 inbound_message 事件转发给入站订阅者（InboundRouter）
- 周期清理处于 error 状态且长时间无活动的会话

状态机：
    creating     → connected | error
    connected    → qr_ready | reconnecting | error | closing
    qr_ready     → connected | error | closing
    reconnecting → connected | error
    error        → reconnecting | closing
    closing      → （从存活表中移除）

所有状态变化都来自传输层事件或显式 API 调用，没有自发转换。

【Java 开发者类比】
- _sessions 类似于 ConcurrentHashMap<String, Session>，但 asyncio 单线程调度下
  只要不在修改过程中 await，就不需要加锁
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from sessionmux.bus.events import (
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_INBOUND_MESSAGE,
    EVENT_PAIRING,
    EVENT_STATE_CHANGE,
    Notification,
    TransportEvent,
)
from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import ConnectionConfig
from sessionmux.errors import (
    CapacityError,
    ConfigurationError,
    DuplicateSessionError,
    InvalidIdentifierError,
    NotInitializedError,
    RetryExhaustedError,
    SessionMuxError,
    SessionNotConnectedError,
    SessionNotFoundError,
    TransportConnectionError,
    TransportError,
)
from sessionmux.pairing.cache import PairingCodeCache
from sessionmux.transport.base import TransportAdapter
from sessionmux.utils.helpers import is_valid_session_id
from sessionmux.utils.periodic import PeriodicTask

InboundCallback = Callable[[TransportEvent], Awaitable[None]]


class SessionStatus(str, Enum):
    """会话状态。"""

    CREATING = "creating"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Session:
    """
    存活会话。

    属性:
        session_id: 会话 ID（创建后不可变）
        status: 当前状态
        created_at: 创建时间
        last_activity_at: 最近一次活动时间（任何传输事件或发送都会刷新）
        reconnect_attempts: 连续重连次数
        metadata: 描述、标签等
        options: 创建时的选项
        transport_state: 传输层最近一次上报的原始状态
        generation: 会话实例序号；同一 ID 关闭后重建会得到新的序号，
                    随通知一起发出，订阅者据此丢弃属于旧实例的通知
    """

    session_id: str
    generation: int = 0
    status: SessionStatus = SessionStatus.CREATING
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)
    reconnect_attempts: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    transport_state: str | None = None

    def touch(self) -> None:
        self.last_activity_at = datetime.now()

    def snapshot(self, has_handle: bool = False) -> dict[str, Any]:
        """只读快照（不含传输层句柄）。"""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "reconnect_attempts": self.reconnect_attempts,
            "metadata": dict(self.metadata),
            "transport_state": self.transport_state,
            "generation": self.generation,
            "has_handle": has_handle,
        }


class ConnectionSupervisor:
    """
    连接监督器。

    参数:
        config: 连接配置
        transport: 传输层适配器
        bus: 事件总线（消费传输事件、发出通知）
        pairing: 配对码缓存
    """

    def __init__(
        self,
        config: ConnectionConfig,
        transport: TransportAdapter,
        bus: EventBus,
        pairing: PairingCodeCache,
    ):
        self.config = config
        self.transport = transport
        self.bus = bus
        self.pairing = pairing
        self._sessions: dict[str, Session] = {}
        self._handles: dict[str, Any] = {}
        self._inbound_callbacks: list[InboundCallback] = []
        self._generation = 0
        self._initialized = False
        self._started_at: float | None = None
        self._event_task: asyncio.Task | None = None
        self._sweeper = PeriodicTask("idle-session-sweep", config.cleanup_interval_ms, self.sweep_idle)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def sessions_path(self) -> Path:
        return Path(self.config.sessions_path).expanduser()

    async def initialize(self) -> None:
        """
        校验配置并启动后台任务（传输事件消费、空闲会话清理）。

        异常:
            ConfigurationError: sessions_path 为空或 max_sessions <= 0
        """
        if self._initialized:
            return
        if not self.config.sessions_path or not str(self.config.sessions_path).strip():
            raise ConfigurationError("connection.sessions_path must be set")
        if self.config.max_sessions <= 0:
            raise ConfigurationError(f"connection.max_sessions must be > 0, got {self.config.max_sessions}")

        self.sessions_path.mkdir(parents=True, exist_ok=True)
        await self.transport.start()
        self._event_task = asyncio.create_task(self._consume_events())
        self._sweeper.start()
        self._started_at = time.time()
        self._initialized = True
        logger.info(
            f"Connection supervisor initialized (max {self.config.max_sessions} sessions, "
            f"path {self.sessions_path})"
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Connection supervisor is not initialized")

    def on_inbound(self, callback: InboundCallback) -> None:
        """注册入站消息订阅者，收到 inbound_message 事件时按注册顺序调用。"""
        self._inbound_callbacks.append(callback)

    def _emit(self, name: str, session: Session, **data: Any) -> None:
        """发出带会话实例序号的通知。"""
        self.bus.emit(name, session.session_id, generation=session.generation, **data)

    def is_stale(self, notification: Notification) -> bool:
        """
        通知是否属于已被取代的旧会话实例。

        通知异步送达，期间同一 ID 可能已被关闭并重建；
        此时通知携带的序号与存活会话的序号不同。
        """
        generation = notification.data.get("generation")
        session = self._sessions.get(notification.session_id)
        return generation is not None and session is not None and session.generation != generation

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def create_session(self, session_id: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        创建会话并通过传输层建立连接。

        流程：
        1. 校验 ID、重复、容量
        2. 登记 creating 占位记录
        3. 调用 transport.connect()，等待期间可能收到 pairing 事件（→ qr_ready）
        4. 成功：保存句柄，状态置为 connected；失败：移除占位记录

        参数:
            session_id: 会话 ID，须匹配 ^[A-Za-z0-9_-]{3,50}$
            options: 可选，支持 metadata（dict）及传给传输层的其他参数

        返回:
            会话快照

        异常:
            InvalidIdentifierError / DuplicateSessionError / CapacityError / TransportConnectionError
        """
        self._ensure_initialized()
        options = dict(options or {})

        if not is_valid_session_id(session_id):
            raise InvalidIdentifierError(
                "Session id must match [A-Za-z0-9_-]{3,50}", session_id=str(session_id)
            )
        if session_id in self._sessions:
            raise DuplicateSessionError(f"Session {session_id} already exists", session_id=session_id)
        if len(self._sessions) >= self.config.max_sessions:
            raise CapacityError(
                f"Maximum number of sessions reached ({self.config.max_sessions})",
                session_id=session_id,
                max_sessions=self.config.max_sessions,
            )

        metadata = {
            "user_agent": options.pop("user_agent", "sessionmux"),
            "description": f"Session {session_id}",
            "tags": [],
        }
        metadata.update(options.pop("metadata", None) or {})
        self._generation += 1
        session = Session(session_id=session_id, generation=self._generation, metadata=metadata, options=options)
        self._sessions[session_id] = session
        logger.info(f"Creating session {session_id}")

        try:
            handle = await self.transport.connect(session_id, self._connect_options(session_id, options))
        except Exception as e:
            if self._sessions.get(session_id) is session:
                del self._sessions[session_id]
            logger.error(f"Failed to create session {session_id}: {e}")
            self._emit("session_error", session, error=str(e), phase="create")
            raise TransportConnectionError(
                f"Failed to connect session {session_id}: {e}", session_id=session_id
            ) from e

        if self._sessions.get(session_id) is not session or session.status == SessionStatus.CLOSING:
            # 连接期间会话已被关闭
            await self._close_handle(session_id, handle)
            raise TransportConnectionError(
                f"Session {session_id} was closed while connecting", session_id=session_id
            )

        self._handles[session_id] = handle
        session.status = SessionStatus.CONNECTED
        session.reconnect_attempts = 0
        session.touch()
        logger.info(f"Session {session_id} created and connected")
        self._emit("session_created", session, status=session.status.value)
        self._emit("session_connected", session)
        return session.snapshot(has_handle=True)

    def _connect_options(self, session_id: str, options: dict[str, Any]) -> dict[str, Any]:
        connect_options = {
            "session_path": str(self.sessions_path / session_id),
            "headless": self.config.headless,
        }
        connect_options.update(options)
        return connect_options

    async def _close_handle(self, session_id: str, handle: Any) -> None:
        """关闭句柄，失败只记录警告。"""
        if handle is None:
            return
        try:
            await self.transport.close(handle)
        except Exception as e:
            logger.warning(f"Error closing transport handle for {session_id}: {e}")

    async def close_session(self, session_id: str) -> bool:
        """
        关闭会话（尽力而为且幂等）。

        无论传输层关闭是否成功，会话都会从存活表中移除。

        返回:
            会话不存在或已在关闭中时返回 False
        """
        session = self._sessions.get(session_id)
        if session is None or session.status in (SessionStatus.CLOSING, SessionStatus.CLOSED):
            return False

        session.status = SessionStatus.CLOSING
        handle = self._handles.pop(session_id, None)
        await self._close_handle(session_id, handle)

        if self._sessions.get(session_id) is session:
            del self._sessions[session_id]
        session.status = SessionStatus.CLOSED
        self.pairing.clear(session_id)
        logger.info(f"Session {session_id} closed")
        self._emit("session_closed", session)
        return True

    async def close_all(self) -> dict[str, bool]:
        """并发关闭所有会话，等待全部完成。"""
        session_ids = list(self._sessions)
        if not session_ids:
            return {}
        results = await asyncio.gather(
            *(self.close_session(sid) for sid in session_ids),
            return_exceptions=True,
        )
        outcome = {}
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Error closing session {sid}: {result}")
                outcome[sid] = False
            else:
                outcome[sid] = result
        return outcome

    async def reconnect_session(self, session_id: str) -> bool:
        """
        重连会话。

        流程：
        1. 重连次数已达上限 → 状态置为 error，抛出 RetryExhaustedError
        2. 次数 +1，状态置为 reconnecting，关闭现有句柄
        3. 固定等待 reconnect_delay_ms
        4. 通过传输层重新连接，成功后次数清零

        返回:
            True 表示重连成功；等待期间会话被关闭则返回 False

        异常:
            SessionNotFoundError / RetryExhaustedError / TransportConnectionError
        """
        self._ensure_initialized()
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        if session.reconnect_attempts >= self.config.max_reconnect_attempts:
            session.status = SessionStatus.ERROR
            logger.error(
                f"Session {session_id} exhausted reconnect attempts ({self.config.max_reconnect_attempts})"
            )
            self._emit("session_reconnect_failed", session, attempts=session.reconnect_attempts, exhausted=True)
            raise RetryExhaustedError(
                f"Maximum reconnect attempts reached for {session_id}",
                session_id=session_id,
                attempts=session.reconnect_attempts,
            )

        session.reconnect_attempts += 1
        session.status = SessionStatus.RECONNECTING
        attempt = session.reconnect_attempts
        logger.info(f"Reconnecting session {session_id} (attempt {attempt}/{self.config.max_reconnect_attempts})")

        await self._close_handle(session_id, self._handles.pop(session_id, None))
        await asyncio.sleep(self.config.reconnect_delay_ms / 1000)

        if self._sessions.get(session_id) is not session or session.status != SessionStatus.RECONNECTING:
            logger.info(f"Reconnect of {session_id} abandoned, session was closed")
            return False

        try:
            handle = await self.transport.connect(session_id, self._connect_options(session_id, session.options))
        except Exception as e:
            if self._sessions.get(session_id) is session:
                session.status = SessionStatus.ERROR
                session.touch()
            logger.error(f"Reconnect attempt {attempt} for {session_id} failed: {e}")
            self._emit("session_reconnect_failed", session, attempts=attempt, error=str(e))
            raise TransportConnectionError(
                f"Reconnect failed for {session_id}: {e}", session_id=session_id
            ) from e

        if self._sessions.get(session_id) is not session:
            await self._close_handle(session_id, handle)
            return False

        self._handles[session_id] = handle
        session.status = SessionStatus.CONNECTED
        session.reconnect_attempts = 0
        session.touch()
        logger.info(f"Session {session_id} reconnected")
        self._emit("session_reconnected", session, attempts=attempt)
        self._emit("session_connected", session)
        return True

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.snapshot(has_handle=session_id in self._handles)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.snapshot(has_handle=sid in self._handles) for sid, s in self._sessions.items()]

    def get_session_status(self, session_id: str) -> str:
        session = self._sessions.get(session_id)
        return session.status.value if session else "not_found"

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def is_connected(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.status == SessionStatus.CONNECTED

    def get_pairing(self, session_id: str, fmt: str = "dataURL") -> dict[str, Any] | None:
        return self.pairing.get(session_id, fmt)

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------

    async def send_through_handle(self, session_id: str, recipient: str, body: str) -> dict[str, Any]:
        """
        通过会话句柄发送文本。

        异常:
            SessionNotFoundError: 会话不存在
            SessionNotConnectedError: 会话状态不是 connected
            TransportError: 传输层发送失败
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        handle = self._handles.get(session_id)
        if session.status != SessionStatus.CONNECTED or handle is None:
            raise SessionNotConnectedError(
                f"Session {session_id} is not connected (status: {session.status.value})",
                session_id=session_id,
            )

        session.touch()
        try:
            receipt = await self.transport.send_text(handle, recipient, body)
        except SessionMuxError:
            raise
        except Exception as e:
            raise TransportError(f"Send failed on {session_id}: {e}", session_id=session_id) from e
        return receipt if isinstance(receipt, dict) else {"result": receipt}

    # ------------------------------------------------------------------
    # 传输事件
    # ------------------------------------------------------------------

    async def _consume_events(self) -> None:
        """传输事件消费循环。单个事件处理失败只记录日志。"""
        while True:
            try:
                event = await self.bus.consume_event()
            except asyncio.CancelledError:
                break
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling transport event {event.type} for {event.session_id}: {e}")

    async def handle_event(self, event: TransportEvent) -> None:
        """
        处理一条传输事件。

        - pairing：写入配对码缓存，状态置为 qr_ready
        - connected：状态置为 connected，重连次数清零
        - state_change：记录传输层原始状态
        - inbound_message：转发给入站订阅者
        - error：状态置为 error
        """
        session = self._sessions.get(event.session_id)
        if session is None:
            logger.debug(f"Ignoring {event.type} event for unknown session {event.session_id}")
            return

        session.touch()
        payload = event.payload or {}

        if event.type == EVENT_PAIRING:
            record = self.pairing.store(event.session_id, payload, int(payload.get("attempts") or 1))
            if session.status not in (SessionStatus.CLOSING, SessionStatus.RECONNECTING):
                session.status = SessionStatus.QR_READY
            self._emit("pairing_generated", session, attempts=record.attempts)

        elif event.type == EVENT_CONNECTED:
            if session.status == SessionStatus.CLOSING:
                return
            if self.pairing.has(event.session_id):
                self.pairing.mark_scanned(event.session_id)
            if event.session_id not in self._handles:
                # 创建或重连尚未完成，由 create_session / reconnect_session 负责置为 connected
                logger.debug(f"Session {event.session_id} connected before its handle was stored")
                return
            session.reconnect_attempts = 0
            if session.status != SessionStatus.CONNECTED:
                session.status = SessionStatus.CONNECTED
                logger.info(f"Session {event.session_id} connected")
                self._emit("session_connected", session)

        elif event.type == EVENT_STATE_CHANGE:
            session.transport_state = payload.get("state")
            logger.debug(f"Session {event.session_id} transport state: {session.transport_state}")

        elif event.type == EVENT_INBOUND_MESSAGE:
            for callback in self._inbound_callbacks:
                try:
                    await callback(event)
                except Exception as e:
                    logger.error(f"Inbound subscriber failed for {event.session_id}: {e}")

        elif event.type == EVENT_ERROR:
            if session.status == SessionStatus.CLOSING:
                return
            session.status = SessionStatus.ERROR
            error = payload.get("error", "unknown error")
            logger.error(f"Session {event.session_id} transport error: {error}")
            self._emit("session_error", session, error=error)

        else:
            logger.warning(f"Unknown transport event type: {event.type}")

    # ------------------------------------------------------------------
    # 清理与统计
    # ------------------------------------------------------------------

    async def sweep_idle(self) -> list[str]:
        """关闭 error 状态且空闲超过 session_timeout_ms 的会话，返回被关闭的 ID。"""
        now = datetime.now()
        timeout_s = self.config.session_timeout_ms / 1000
        idle = [
            sid for sid, s in self._sessions.items()
            if s.status == SessionStatus.ERROR and (now - s.last_activity_at).total_seconds() > timeout_s
        ]
        for sid in idle:
            logger.info(f"Closing idle errored session {sid}")
            await self.close_session(sid)
        return idle

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status.value] += 1
        return {
            "total": len(self._sessions),
            "max": self.config.max_sessions,
            "connected": counts[SessionStatus.CONNECTED.value],
            "creating": counts[SessionStatus.CREATING.value],
            "reconnecting": counts[SessionStatus.RECONNECTING.value],
            "error": counts[SessionStatus.ERROR.value],
            "qr_pending": counts[SessionStatus.QR_READY.value],
            "uptime_s": round(time.time() - self._started_at, 1) if self._started_at else 0,
        }

    async def destroy(self) -> None:
        """关闭全部会话，停止后台任务，释放传输层。"""
        await self.close_all()
        self._sweeper.stop()
        if self._event_task:
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
            self._event_task = None
        await self.transport.shutdown()
        self._initialized = False
        logger.info("Connection supervisor destroyed")
