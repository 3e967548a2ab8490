"""
出站调度器 - 每个会话一条优先级队列，由一个惰性启动的 drain 任务串行发送。

发送流程（drain 循环，每会话同一时刻最多一个发送在进行）：
1. 会话暂停、队列为空或会话不在 connected 状态 → 退出循环
2. 取队首消息；已过期 → 丢弃并发出 messages_expired
3. 限流窗口已满 → 等待窗口结束后继续
4. 通过 ConnectionSupervisor 发送，与 message_timeout_ms 竞速
5. 成功：标记 sent，出队，等待 inter_message_delay_ms
6. 失败（含超时）：attempts+1；达到 max_attempts → 标记 failed，出队，发出 message_failed；
   否则等待 retry_delay 后重试同一条消息（不推进队列）

退避公式：retry_delay = min(retry_base_delay_ms × retry_multiplier^(attempts-1), max_retry_delay_ms)

排队发送中的传输层错误只通过通知和统计暴露，不会抛回给 enqueue 的调用方；
立即发送（send_immediate）的错误直接抛出。

【Java 开发者类比】
- _tasks 类似于 Map<String, Future<?>>，一个会话一个消费者
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from sessionmux.bus.queue import EventBus
from sessionmux.config.schema import SenderConfig
from sessionmux.connection.supervisor import ConnectionSupervisor
from sessionmux.errors import (
    DeliveryTimeoutError,
    NotInitializedError,
    QueueFullError,
    RateLimitExceededError,
    SessionMuxError,
    SessionNotConnectedError,
    SessionNotFoundError,
    TransportError,
    ValidationError,
)
from sessionmux.sender.ratelimit import RateLimiter
from sessionmux.utils.helpers import generate_message_id, ms_to_iso, normalize_recipient, now_ms, truncate_string
from sessionmux.utils.periodic import PeriodicTask

PRIORITIES = ("normal", "high")
CLEAR_FILTERS = ("all", "failed", "pending")


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(eq=False)
class QueuedMessage:
    """
    排队中的出站消息。

    status 为 failed 且仍在队列中，表示上次尝试失败、正在等待重试。
    """

    id: str
    session_id: str
    recipient: str
    original_recipient: str
    body: str
    priority: str = "normal"
    attempts: int = 0
    max_attempts: int = 3
    status: MessageStatus = MessageStatus.QUEUED
    queued_at_ms: int = 0
    expires_at_ms: int = 0
    delay_ms: int = 3_000
    timeout_ms: int = 30_000
    skip_rate_limit: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    last_error: str | None = None
    sent_at_ms: int | None = None
    receipt: dict[str, Any] | None = None

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "recipient": self.recipient,
            "body": truncate_string(self.body, 50),
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "queued_at": ms_to_iso(self.queued_at_ms),
            "expires_at": ms_to_iso(self.expires_at_ms),
            "last_error": self.last_error,
        }


@dataclass
class DrainState:
    """单个会话的 drain 循环状态。"""

    active: bool = False
    paused: bool = False
    current: QueuedMessage | None = None
    last_processed_at_ms: int | None = None
    task: asyncio.Task | None = None


class OutboundDispatcher:
    """
    出站调度器。

    参数:
        config: 发送配置
        supervisor: 连接监督器（查询会话状态、通过句柄发送）
        bus: 事件总线
        limiter: 可选的限流器，默认按 max_messages_per_minute 构造
    """

    def __init__(
        self,
        config: SenderConfig,
        supervisor: ConnectionSupervisor,
        bus: EventBus,
        limiter: RateLimiter | None = None,
    ):
        self.config = config
        self.supervisor = supervisor
        self.bus = bus
        self.limiter = limiter or RateLimiter(config.max_messages_per_minute)
        self._queues: dict[str, list[QueuedMessage]] = {}
        self._states: dict[str, DrainState] = {}
        self._initialized = False
        self._sweeper = PeriodicTask("expired-message-sweep", config.cleanup_interval_ms, self._sweep_async)
        self._stats = {"queued": 0, "sent": 0, "failed": 0, "expired": 0, "cleared": 0, "retries": 0}

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._sweeper.start()
        self._initialized = True
        logger.info(
            f"Outbound dispatcher initialized ({self.config.max_messages_per_minute} msg/min, "
            f"queue size {self.config.max_queue_size})"
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Outbound dispatcher is not initialized")

    def _state(self, session_id: str) -> DrainState:
        state = self._states.get(session_id)
        if state is None:
            state = DrainState()
            self._states[session_id] = state
        return state

    def retry_delay_ms(self, attempts: int) -> int:
        """第 attempts 次失败后的退避时间。"""
        delay = self.config.retry_base_delay_ms * (self.config.retry_multiplier ** max(0, attempts - 1))
        return int(min(delay, self.config.max_retry_delay_ms))

    def _validate(self, recipient: Any, body: Any) -> None:
        if not isinstance(recipient, str) or not recipient.strip():
            raise ValidationError("Recipient must be a non-empty string")
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("Message body must be a non-empty string")
        if len(body) > self.config.max_message_length:
            raise ValidationError(
                f"Message body exceeds {self.config.max_message_length} characters",
                length=len(body),
            )

    # ------------------------------------------------------------------
    # 入队与立即发送
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        session_id: str,
        recipient: str,
        body: str,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        消息入队。

        参数:
            options: priority（normal/high）、delay_ms、timeout_ms、max_retries、
                     skip_rate_limit、metadata

        返回:
            {message_id, status, queue_position, estimated_send_time, estimated_delay_ms}

        异常:
            ValidationError / SessionNotFoundError / QueueFullError
        """
        self._ensure_initialized()
        opts = options or {}
        self._validate(recipient, body)

        priority = opts.get("priority", "normal")
        if priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority: {priority}", session_id=session_id)
        if not self.supervisor.has_session(session_id):
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        queue = self._queues.setdefault(session_id, [])
        if len(queue) >= self.config.max_queue_size:
            raise QueueFullError(
                f"Queue for {session_id} is full ({self.config.max_queue_size})",
                session_id=session_id,
            )

        now = now_ms()
        message = QueuedMessage(
            id=generate_message_id(),
            session_id=session_id,
            recipient=normalize_recipient(recipient, self.config.default_country_code),
            original_recipient=recipient,
            body=body,
            priority=priority,
            max_attempts=int(opts.get("max_retries", self.config.max_retries)),
            queued_at_ms=now,
            expires_at_ms=now + int(opts.get("ttl_ms", self.config.queue_message_ttl_ms)),
            delay_ms=int(opts.get("delay_ms", self.config.inter_message_delay_ms)),
            timeout_ms=int(opts.get("timeout_ms", self.config.message_timeout_ms)),
            skip_rate_limit=bool(opts.get("skip_rate_limit", False)),
            metadata=dict(opts.get("metadata") or {}),
        )

        index = self._insert(queue, message)
        position = index + 1
        estimated_delay = position * message.delay_ms
        self._stats["queued"] += 1

        logger.debug(f"Message {message.id} queued for {session_id} at position {position}")
        self.bus.emit(
            "message_queued",
            session_id,
            message_id=message.id,
            recipient=message.recipient,
            priority=priority,
            queue_position=position,
        )
        self._ensure_drain(session_id)

        return {
            "message_id": message.id,
            "status": MessageStatus.QUEUED.value,
            "queue_position": position,
            "estimated_send_time": ms_to_iso(now + estimated_delay),
            "estimated_delay_ms": estimated_delay,
        }

    @staticmethod
    def _insert(queue: list[QueuedMessage], message: QueuedMessage) -> int:
        """高优先级插到所有已排队的高优先级之后、第一条普通消息之前；普通消息追加到队尾。"""
        if message.priority == "high":
            for index, queued in enumerate(queue):
                if queued.priority != "high" and queued.status != MessageStatus.SENDING:
                    queue.insert(index, message)
                    return index
        queue.append(message)
        return len(queue) - 1

    async def send_immediate(
        self,
        session_id: str,
        recipient: str,
        body: str,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        绕过队列立即发送。

        仍受限流约束（options.skip_rate_limit=True 时跳过），错误直接抛给调用方。

        异常:
            ValidationError / SessionNotFoundError / SessionNotConnectedError /
            RateLimitExceededError / DeliveryTimeoutError / TransportError
        """
        self._ensure_initialized()
        opts = options or {}
        self._validate(recipient, body)

        status = self.supervisor.get_session_status(session_id)
        if status == "not_found":
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        if status != "connected":
            raise SessionNotConnectedError(
                f"Session {session_id} is not connected (status: {status})", session_id=session_id
            )

        if not opts.get("skip_rate_limit", False) and not self.limiter.try_acquire(session_id):
            raise RateLimitExceededError(
                f"Rate limit exceeded for {session_id}",
                session_id=session_id,
                retry_after_ms=self.limiter.time_until_reset(session_id),
            )

        message_id = generate_message_id()
        normalized = normalize_recipient(recipient, self.config.default_country_code)
        timeout_ms = int(opts.get("timeout_ms", self.config.message_timeout_ms))
        try:
            receipt = await asyncio.wait_for(
                self.supervisor.send_through_handle(session_id, normalized, body),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            self._stats["failed"] += 1
            raise DeliveryTimeoutError(
                f"Immediate send to {normalized} timed out after {timeout_ms}ms", session_id=session_id
            )
        except SessionMuxError:
            self._stats["failed"] += 1
            raise

        sent_at = now_ms()
        self._stats["sent"] += 1
        logger.info(f"Immediate message {message_id} sent via {session_id} to {normalized}")
        self.bus.emit("message_sent", session_id, message_id=message_id, recipient=normalized, immediate=True)
        return {
            "message_id": message_id,
            "status": MessageStatus.SENT.value,
            "recipient": normalized,
            "sent_at": ms_to_iso(sent_at),
            "receipt": receipt,
        }

    # ------------------------------------------------------------------
    # drain 循环
    # ------------------------------------------------------------------

    def _ensure_drain(self, session_id: str) -> bool:
        """队列非空且未暂停、未在运行时启动 drain 任务。"""
        state = self._state(session_id)
        if state.active or state.paused or not self._queues.get(session_id):
            return False
        state.active = True
        state.task = asyncio.create_task(self._drain(session_id))
        return True

    def kick(self, session_id: str) -> bool:
        """会话（重新）连接后调用，恢复积压队列的发送。"""
        if not self._initialized:
            return False
        return self._ensure_drain(session_id)

    async def _drain(self, session_id: str) -> None:
        state = self._state(session_id)
        logger.debug(f"Drain loop started for {session_id}")
        try:
            while True:
                queue = self._queues.get(session_id)
                if not queue or state.paused:
                    break
                if not self.supervisor.is_connected(session_id):
                    logger.debug(f"Drain loop for {session_id} waiting: session not connected")
                    break

                message = queue[0]
                if message.is_expired(now_ms()):
                    self._expire(session_id, [message])
                    continue

                if not message.skip_rate_limit and not self.limiter.check(session_id):
                    wait_ms = max(self.limiter.time_until_reset(session_id), 10)
                    logger.warning(f"Rate limit reached for {session_id}, waiting {wait_ms}ms")
                    await asyncio.sleep(wait_ms / 1000)
                    continue

                sent = await self._attempt(session_id, message, state)
                state.last_processed_at_ms = now_ms()
                if sent:
                    await asyncio.sleep(message.delay_ms / 1000)
        finally:
            state.active = False
            state.current = None
            state.task = None
            logger.debug(f"Drain loop stopped for {session_id}")

    async def _attempt(self, session_id: str, message: QueuedMessage, state: DrainState) -> bool:
        """尝试发送一次；失败时负责出队或退避等待。返回是否发送成功。"""
        state.current = message
        message.status = MessageStatus.SENDING
        try:
            receipt = await asyncio.wait_for(
                self.supervisor.send_through_handle(session_id, message.recipient, message.body),
                timeout=message.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            error: SessionMuxError = DeliveryTimeoutError(
                f"Send timed out after {message.timeout_ms}ms", session_id=session_id
            )
        except SessionMuxError as e:
            error = e
        except Exception as e:
            error = TransportError(str(e), session_id=session_id)
        else:
            if not message.skip_rate_limit:
                self.limiter.record(session_id)
            message.status = MessageStatus.SENT
            message.sent_at_ms = now_ms()
            message.receipt = receipt
            self._remove(session_id, message)
            self._stats["sent"] += 1
            logger.info(f"Message {message.id} sent via {session_id} to {message.recipient}")
            self.bus.emit(
                "message_sent",
                session_id,
                message_id=message.id,
                recipient=message.recipient,
                attempts=message.attempts + 1,
                immediate=False,
            )
            return True
        finally:
            state.current = None

        message.attempts += 1
        message.last_error = str(error)
        message.status = MessageStatus.FAILED

        if message.attempts >= message.max_attempts:
            self._remove(session_id, message)
            self._stats["failed"] += 1
            logger.error(
                f"Message {message.id} failed after {message.attempts} attempt(s) on {session_id}: {error}"
            )
            self.bus.emit(
                "message_failed",
                session_id,
                message_id=message.id,
                recipient=message.recipient,
                attempts=message.attempts,
                error=str(error),
            )
            return False

        delay = self.retry_delay_ms(message.attempts)
        self._stats["retries"] += 1
        logger.warning(
            f"Message {message.id} attempt {message.attempts}/{message.max_attempts} failed on "
            f"{session_id}: {error}; retrying in {delay}ms"
        )
        await asyncio.sleep(delay / 1000)
        return False

    def _remove(self, session_id: str, message: QueuedMessage) -> bool:
        queue = self._queues.get(session_id)
        if queue and message in queue:
            queue.remove(message)
            return True
        return False

    def _expire(self, session_id: str, messages: list[QueuedMessage]) -> int:
        removed = []
        for message in messages:
            if self._remove(session_id, message):
                message.status = MessageStatus.EXPIRED
                removed.append(message)
        if removed:
            self._stats["expired"] += len(removed)
            logger.warning(f"Dropped {len(removed)} expired message(s) from {session_id}")
            self.bus.emit(
                "messages_expired",
                session_id,
                count=len(removed),
                message_ids=[m.id for m in removed],
            )
        return len(removed)

    # ------------------------------------------------------------------
    # 队列控制
    # ------------------------------------------------------------------

    def pause(self, session_id: str) -> bool:
        """暂停会话的发送，正在进行的一次发送会完成。会话未知时返回 False。"""
        if session_id not in self._queues and not self.supervisor.has_session(session_id):
            return False
        self._state(session_id).paused = True
        logger.info(f"Queue paused for {session_id}")
        self.bus.emit("queue_paused", session_id)
        return True

    def resume(self, session_id: str) -> bool:
        """恢复发送，队列非空时重新启动 drain 循环。"""
        state = self._states.get(session_id)
        if state is None or not state.paused:
            return False
        state.paused = False
        logger.info(f"Queue resumed for {session_id}")
        self.bus.emit("queue_resumed", session_id)
        self._ensure_drain(session_id)
        return True

    def clear(self, session_id: str, filter: str = "all") -> int:
        """
        清除队列中的消息。

        参数:
            filter: all（全部）/ failed（等待重试的）/ pending（尚未尝试的）

        返回:
            删除条数
        """
        if filter not in CLEAR_FILTERS:
            raise ValidationError(f"Invalid clear filter: {filter}", session_id=session_id)
        queue = self._queues.get(session_id)
        if not queue:
            return 0

        if filter == "all":
            removed = list(queue)
        elif filter == "failed":
            removed = [m for m in queue if m.status == MessageStatus.FAILED]
        else:
            removed = [m for m in queue if m.status == MessageStatus.QUEUED]

        for message in removed:
            queue.remove(message)
        if removed:
            self._stats["cleared"] += len(removed)
            logger.info(f"Cleared {len(removed)} message(s) ({filter}) from {session_id}")
            self.bus.emit("queue_cleared", session_id, filter=filter, count=len(removed))
        return len(removed)

    def sweep_expired(self) -> int:
        """从所有队列中移除已过期的消息。"""
        now = now_ms()
        total = 0
        for session_id, queue in list(self._queues.items()):
            expired = [m for m in queue if m.is_expired(now) and m.status != MessageStatus.SENDING]
            if expired:
                total += self._expire(session_id, expired)
        return total

    async def _sweep_async(self) -> None:
        self.sweep_expired()

    async def forget(self, session_id: str) -> None:
        """丢弃会话的全部发送状态（会话关闭时调用）。"""
        state = self._states.pop(session_id, None)
        self._queues.pop(session_id, None)
        self.limiter.remove(session_id)
        if state and state.task and state.task is not asyncio.current_task():
            state.task.cancel()
            try:
                await state.task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def queue_size(self, session_id: str) -> int:
        return len(self._queues.get(session_id, []))

    def get_queue_status(self, session_id: str) -> dict[str, Any]:
        queue = self._queues.get(session_id, [])
        state = self._states.get(session_id) or DrainState()
        delay = self.config.inter_message_delay_ms
        return {
            "session_id": session_id,
            "queue_size": len(queue),
            "processing": state.active,
            "paused": state.paused,
            "current_message": state.current.to_dict() if state.current else None,
            "last_processed_at": ms_to_iso(state.last_processed_at_ms),
            "rate_limit": self.limiter.snapshot(session_id),
            "estimated_time_to_complete_ms": len(queue) * delay,
            "pending_messages": [m.to_dict() for m in queue[:20]],
        }

    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "active_queues": sum(1 for q in self._queues.values() if q),
            "total_queued": sum(len(q) for q in self._queues.values()),
            "processing_sessions": sum(1 for s in self._states.values() if s.active),
            "paused_sessions": sum(1 for s in self._states.values() if s.paused),
        }

    async def destroy(self) -> None:
        """停止所有 drain 任务与清理任务，清空队列。"""
        self._sweeper.stop()
        for session_id in list(self._states):
            await self.forget(session_id)
        self._queues.clear()
        self.limiter.clear()
        self._initialized = False
        logger.info("Outbound dispatcher destroyed")
