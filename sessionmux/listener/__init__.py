"""入站路由模块 - 过滤、持久化入站消息并触发自动回复。"""

from sessionmux.listener.router import InboundRouter, ListenerState
from sessionmux.listener.users import UserCache

__all__ = ["InboundRouter", "ListenerState", "UserCache"]
