"""
入站路由器 - 消费连接监督器转发的入站消息，过滤、持久化并按需自动回复。

处理流程（每条入站消息）：
1. 会话未开启监听 → 忽略
2. should_process() 过滤：广播、群聊、状态消息、非文本消息（各自可配置）
3. 发送方地址规范化为手机号
4. 保存消息记录（save_messages）
5. 查找或创建用户记录（先查用户缓存，再查记录存储）
6. 写入对话日志（save_conversations）
7. 更新会话注册表统计
8. 自动回复（ai_enabled 且配置了回复生成器）：
   限流 → 取最近 ai_max_history 条对话 → generate() → 固定延迟 →
   通过 OutboundDispatcher.send_immediate() 发出 → 写入对话日志

每条消息在独立的任务中处理，单条消息处理失败只计入 errors，不影响其他消息或会话。

二开提示：
- 替换 AutoResponder 即可接入任意回复逻辑（关键词、LLM、人工坐席转发等）
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from sessionmux.bus.events import InboundMessage, Notification, TransportEvent
from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import ListenerConfig
from sessionmux.connection.supervisor import ConnectionSupervisor
from sessionmux.errors import NotInitializedError, SessionNotFoundError
from sessionmux.listener.users import UserCache
from sessionmux.responder.base import AutoResponder
from sessionmux.sender.dispatcher import OutboundDispatcher
from sessionmux.sender.ratelimit import RateLimiter
from sessionmux.session.registry import SessionRegistry
from sessionmux.store.base import RecordStore
from sessionmux.utils.helpers import extract_phone, now_ms, truncate_string

TEXT_TYPES = ("chat", "text")

# 关闭后保留监听选项的会话数上限，超出时丢弃最早的
MAX_REMEMBERED_LISTENERS = 100


@dataclass
class ListenerOptions:
    """单个会话的监听选项，未指定的项取 ListenerConfig 的默认值。"""

    ai_enabled: bool = False
    save_messages: bool = True
    save_conversations: bool = True

    @classmethod
    def from_config(cls, config: ListenerConfig, overrides: dict[str, Any] | None = None) -> "ListenerOptions":
        overrides = overrides or {}
        return cls(
            ai_enabled=bool(overrides.get("ai_enabled", config.ai_enabled)),
            save_messages=bool(overrides.get("save_messages", config.save_messages)),
            save_conversations=bool(overrides.get("save_conversations", config.save_conversations)),
        )


@dataclass
class ListenerState:
    """单个会话的监听状态与统计。"""

    session_id: str
    options: ListenerOptions
    started_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime | None = None
    messages_received: int = 0
    messages_processed: int = 0
    responses_generated: int = 0
    errors: int = 0
    response_time_total_ms: int = 0

    @property
    def average_response_time_ms(self) -> float:
        if not self.responses_generated:
            return 0.0
        return round(self.response_time_total_ms / self.responses_generated, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "messages_received": self.messages_received,
            "messages_processed": self.messages_processed,
            "responses_generated": self.responses_generated,
            "errors": self.errors,
            "average_response_time_ms": self.average_response_time_ms,
            "ai_enabled": self.options.ai_enabled,
        }


class InboundRouter:
    """
    入站路由器。

    参数:
        config: 入站配置
        supervisor: 连接监督器（订阅其入站事件）
        dispatcher: 出站调度器（发送自动回复）
        store: 记录存储（messages / users / conversations 集合）
        bus: 事件总线
        registry: 会话注册表（可选，更新消息统计）
        responder: 自动回复生成器（可选）
        user_cache: 共享用户缓存（可选，默认按配置构造）
        country_code: 号码补全使用的国家码
    """

    def __init__(
        self,
        config: ListenerConfig,
        supervisor: ConnectionSupervisor,
        dispatcher: OutboundDispatcher,
        store: RecordStore,
        bus: EventBus,
        registry: SessionRegistry | None = None,
        responder: AutoResponder | None = None,
        user_cache: UserCache | None = None,
        country_code: str = "54",
    ):
        self.config = config
        self.supervisor = supervisor
        self.dispatcher = dispatcher
        self.store = store
        self.bus = bus
        self.registry = registry
        self.responder = responder
        self.country_code = country_code
        self.users = user_cache or UserCache(config.user_cache_ttl_ms, config.max_user_cache_size)
        self.response_limiter = RateLimiter(config.max_responses_per_minute)
        self._listeners: dict[str, ListenerState] = {}
        self._remembered: dict[str, ListenerOptions] = {}
        self._tasks: set[asyncio.Task] = set()
        self._initialized = False
        self._stats = {
            "messages_received": 0,
            "messages_processed": 0,
            "messages_filtered": 0,
            "responses_generated": 0,
            "errors": 0,
        }
        self._response_time_total_ms = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.supervisor.on_inbound(self._on_inbound)
        self.bus.subscribe("session_closed", self._on_session_closed)
        self.bus.subscribe("session_connected", self._on_session_connected)
        self._initialized = True
        logger.info("Inbound router initialized")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Inbound router is not initialized")

    # ------------------------------------------------------------------
    # 监听开关
    # ------------------------------------------------------------------

    async def start_listening(self, session_id: str, options: dict[str, Any] | None = None) -> bool:
        """
        开启会话的入站处理。

        返回:
            已在监听时返回 False

        异常:
            SessionNotFoundError: 会话不存在
        """
        self._ensure_initialized()
        if session_id in self._listeners:
            logger.warning(f"Already listening on session {session_id}")
            return False
        if not self.supervisor.has_session(session_id):
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        listener_options = ListenerOptions.from_config(self.config, options)
        self._listeners[session_id] = ListenerState(session_id=session_id, options=listener_options)
        self._remembered.pop(session_id, None)
        logger.info(f"Listening started on session {session_id} (ai: {listener_options.ai_enabled})")
        self.bus.emit("listening_started", session_id, ai_enabled=listener_options.ai_enabled)
        return True

    async def stop_listening(self, session_id: str) -> bool:
        """关闭会话的入站处理，共享的用户缓存保留。"""
        state = self._listeners.pop(session_id, None)
        if state is None:
            return False
        self.response_limiter.remove(session_id)
        logger.info(
            f"Listening stopped on session {session_id} "
            f"({state.messages_received} received, {state.responses_generated} responses)"
        )
        self.bus.emit("listening_stopped", session_id, stats=state.to_dict())
        return True

    def is_listening(self, session_id: str) -> bool:
        return session_id in self._listeners

    def forget(self, session_id: str) -> None:
        """丢弃会话保留的监听选项（显式关闭会话时调用）。"""
        self._remembered.pop(session_id, None)

    async def _on_session_closed(self, notification: Notification) -> None:
        if self.supervisor.is_stale(notification):
            return
        session_id = notification.session_id
        state = self._listeners.get(session_id)
        if state is not None:
            self._remembered.pop(session_id, None)
            self._remembered[session_id] = state.options
            while len(self._remembered) > MAX_REMEMBERED_LISTENERS:
                self._remembered.pop(next(iter(self._remembered)))
            await self.stop_listening(session_id)

    async def _on_session_connected(self, notification: Notification) -> None:
        session_id = notification.session_id
        options = self._remembered.get(session_id)
        if options is not None and session_id not in self._listeners and self.supervisor.has_session(session_id):
            logger.info(f"Resuming listener on reconnected session {session_id}")
            await self.start_listening(session_id, {
                "ai_enabled": options.ai_enabled,
                "save_messages": options.save_messages,
                "save_conversations": options.save_conversations,
            })

    # ------------------------------------------------------------------
    # 过滤
    # ------------------------------------------------------------------

    def should_process(self, message: InboundMessage) -> bool:
        """按配置过滤广播、群聊、状态消息与非文本消息。"""
        if self.config.ignore_broadcast and message.broadcast:
            return False
        if self.config.ignore_groups and message.is_group:
            return False
        if self.config.ignore_status and message.is_status:
            return False
        if self.config.text_only and message.type not in TEXT_TYPES:
            return False
        return True

    # ------------------------------------------------------------------
    # 处理
    # ------------------------------------------------------------------

    async def _on_inbound(self, event: TransportEvent) -> None:
        if event.session_id not in self._listeners:
            return
        task = asyncio.create_task(self.handle_message(event.session_id, event.payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_message(self, session_id: str, payload: dict[str, Any]) -> bool:
        """
        处理一条入站消息。

        返回:
            True 表示消息通过过滤并完成处理
        """
        listener = self._listeners.get(session_id)
        if listener is None:
            return False

        listener.messages_received += 1
        listener.last_activity_at = datetime.now()
        self._stats["messages_received"] += 1

        message = InboundMessage.from_payload(session_id, payload)
        if not self.should_process(message):
            self._stats["messages_filtered"] += 1
            logger.debug(f"Filtered inbound message {message.message_id} on {session_id} (type {message.type})")
            return False

        try:
            await self._process(listener, message)
        except Exception as e:
            listener.errors += 1
            self._stats["errors"] += 1
            logger.error(f"Error processing inbound message on {session_id}: {e}")
            return False
        return True

    async def _process(self, listener: ListenerState, message: InboundMessage) -> None:
        session_id = listener.session_id
        started_ms = now_ms()
        phone = extract_phone(message.sender, self.country_code)
        logger.info(f"Message on {session_id} from {phone}: {truncate_string(message.text, 60)}")

        if listener.options.save_messages:
            await self.store.insert("messages", {
                "session_id": session_id,
                "message_id": message.message_id,
                "direction": "inbound",
                "sender": message.sender,
                "phone": phone,
                "text": message.text,
                "type": message.type,
                "timestamp": message.timestamp.isoformat(),
                "received_at_ms": now_ms(),
            })

        user = await self._get_or_create_user(phone, message)

        if listener.options.save_conversations:
            await self._log_conversation(session_id, phone, "user", message.text, message.message_id)

        if self.registry is not None:
            await self.registry.record_activity(session_id, "message_received")

        listener.messages_processed += 1
        self._stats["messages_processed"] += 1
        self.bus.emit(
            "message_processed",
            session_id,
            message_id=message.message_id,
            phone=phone,
            user_id=user.get("phone"),
        )

        if listener.options.ai_enabled and self.responder is not None:
            await self._auto_respond(listener, message, phone, started_ms)

    async def _get_or_create_user(self, phone: str, message: InboundMessage) -> dict[str, Any]:
        """先查缓存，再查记录存储，都没有则新建。"""
        cache_key = f"user_{phone}"
        cached = self.users.get(cache_key)
        if cached is not None:
            return cached

        now = datetime.now().isoformat()
        user = await self.store.get("users", phone)
        if user is None:
            user = {
                "phone": phone,
                "name": message.push_name or phone,
                "source": "whatsapp",
                "created_at": now,
                "last_interaction": now,
            }
            logger.info(f"New user {phone}")
        else:
            user["last_interaction"] = now
            if message.push_name and not user.get("name"):
                user["name"] = message.push_name
        await self.store.put("users", phone, user)
        self.users.put(cache_key, user)
        return user

    async def _log_conversation(self, session_id: str, phone: str, role: str, content: str, message_id: str | None = None) -> None:
        await self.store.insert("conversations", {
            "session_id": session_id,
            "phone": phone,
            "role": role,
            "content": content,
            "message_id": message_id,
            "created_at_ms": now_ms(),
        })

    async def conversation_history(self, session_id: str, phone: str) -> list[dict[str, Any]]:
        """最近 ai_max_history 条对话，按时间先后排列。"""
        records = await self.store.query(
            "conversations",
            where={"session_id": session_id, "phone": phone},
            order_by="created_at_ms",
            descending=True,
            limit=self.config.ai_max_history,
        )
        return [{"role": r.get("role"), "content": r.get("content")} for r in reversed(records)]

    async def _auto_respond(
        self, listener: ListenerState, message: InboundMessage, phone: str, started_ms: int
    ) -> None:
        """生成并发出自动回复；响应时间从开始处理入站消息算起，含固定延迟。"""
        session_id = listener.session_id
        if not self.response_limiter.try_acquire(session_id):
            logger.debug(f"Auto-response rate limit reached for {session_id}")
            return

        history = await self.conversation_history(session_id, phone)
        response = await self.responder.generate(message.text, history)
        if not response:
            return

        await asyncio.sleep(self.config.response_delay_ms / 1000)
        if session_id not in self._listeners:
            return

        result = await self.dispatcher.send_immediate(session_id, message.sender, response)
        if listener.options.save_conversations:
            await self._log_conversation(session_id, phone, "assistant", response, result.get("message_id"))

        elapsed_ms = now_ms() - started_ms
        listener.responses_generated += 1
        listener.response_time_total_ms += elapsed_ms
        self._stats["responses_generated"] += 1
        self._response_time_total_ms += elapsed_ms
        logger.info(f"Auto-response sent on {session_id} to {phone}")
        self.bus.emit("auto_response_sent", session_id, phone=phone, message_id=result.get("message_id"))

    # ------------------------------------------------------------------
    # 查询与销毁
    # ------------------------------------------------------------------

    def get_active_listeners(self) -> list[dict[str, Any]]:
        return [state.to_dict() for state in self._listeners.values()]

    def stats(self) -> dict[str, Any]:
        responses = self._stats["responses_generated"]
        return {
            **self._stats,
            "average_response_time_ms": round(self._response_time_total_ms / responses, 1) if responses else 0.0,
            "active_listeners": len(self._listeners),
            "user_cache": self.users.stats(),
            "responder": self.responder.name if self.responder else None,
        }

    async def destroy(self) -> None:
        """停止所有监听并等待进行中的处理任务结束。"""
        for session_id in list(self._listeners):
            await self.stop_listening(session_id)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._remembered.clear()
        self.users.clear()
        self._initialized = False
        logger.info("Inbound router destroyed")
