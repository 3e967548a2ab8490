"""事件总线模块 - 传输事件与通知的异步分发。"""

from sessionmux.bus.events import InboundMessage, Notification, TransportEvent
from sessionmux.bus.queue import EventBus

__all__ = ["EventBus", "TransportEvent", "Notification", "InboundMessage"]
