"""传输层模块 - 每个会话的消息客户端适配器。"""

from sessionmux.transport.base import TransportAdapter
from sessionmux.transport.bridge import BridgeHandle, BridgeTransport

__all__ = ["TransportAdapter", "BridgeTransport", "BridgeHandle"]
