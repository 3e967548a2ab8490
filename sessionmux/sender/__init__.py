"""出站发送模块 - 每会话优先级队列、限流、重试与超时。"""

from sessionmux.sender.dispatcher import MessageStatus, OutboundDispatcher, QueuedMessage
from sessionmux.sender.ratelimit import RateLimiter

__all__ = ["OutboundDispatcher", "QueuedMessage", "MessageStatus", "RateLimiter"]
