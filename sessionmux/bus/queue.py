"""
异步事件总线 - 适配器事件与对外通知的中枢。

两条通道：

传输事件（适配器 → 连接监督器）：
  TransportAdapter → publish_event() → events 队列 → consume_event() → ConnectionSupervisor

通知（各组件 → 订阅者）：
  组件 → emit() → notifications 队列 → dispatch_notifications() → 订阅回调

emit() 是同步方法，组件在任何位置（包括非协程方法）都能发通知；
订阅者按通知名注册，"*" 表示订阅全部。最近的通知保留在 history 中，便于排查问题。
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

from loguru import logger

from sessionmux.bus.events import Notification, TransportEvent

NotificationCallback = Callable[[Notification], Awaitable[None]]


class EventBus:
    """
    异步事件总线。

    属性:
        events: 传输事件队列
        notifications: 通知队列
        history: 最近 history_size 条通知
    """

    def __init__(self, history_size: int = 200):
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self.notifications: asyncio.Queue[Notification] = asyncio.Queue()
        self.history: deque[Notification] = deque(maxlen=history_size)
        self._subscribers: dict[str, list[NotificationCallback]] = {}
        self._running = False

    async def publish_event(self, event: TransportEvent) -> None:
        """发布传输事件（适配器调用）。"""
        await self.events.put(event)

    async def consume_event(self) -> TransportEvent:
        """消费下一条传输事件（阻塞等待）。"""
        return await self.events.get()

    def emit(self, name: str, session_id: str | None = None, **data: Any) -> Notification:
        """
        发出一条通知。

        参数:
            name: 通知名
            session_id: 关联的会话 ID
            **data: 通知数据

        返回:
            已入队的通知对象
        """
        notification = Notification(name=name, session_id=session_id, data=data)
        self.history.append(notification)
        self.notifications.put_nowait(notification)
        return notification

    def subscribe(self, name: str, callback: NotificationCallback) -> None:
        """订阅指定名称的通知，name 为 "*" 时订阅全部。"""
        self._subscribers.setdefault(name, []).append(callback)

    def unsubscribe(self, name: str, callback: NotificationCallback) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def recent(self, name: str | None = None, session_id: str | None = None) -> list[Notification]:
        """按名称/会话筛选 history 中的通知，按时间先后排列。"""
        return [
            n for n in self.history
            if (name is None or n.name == name) and (session_id is None or n.session_id == session_id)
        ]

    async def deliver(self, notification: Notification) -> None:
        """把一条通知交给所有匹配的订阅者。单个订阅者异常只记录日志。"""
        callbacks = self._subscribers.get(notification.name, []) + self._subscribers.get("*", [])
        for callback in callbacks:
            try:
                await callback(notification)
            except Exception as e:
                logger.error(f"Error delivering notification {notification.name}: {e}")

    async def dispatch_notifications(self) -> None:
        """
        通知分发器（后台常驻任务）。

        wait_for 超时 1 秒，以便 stop() 后及时退出。
        """
        self._running = True
        while self._running:
            try:
                notification = await asyncio.wait_for(self.notifications.get(), timeout=1.0)
                await self.deliver(notification)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        """停止通知分发器，循环在下次超时检查时退出。"""
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_events(self) -> int:
        return self.events.qsize()

    @property
    def pending_notifications(self) -> int:
        return self.notifications.qsize()
