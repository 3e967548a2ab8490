"""
传输层适配器抽象基类 - 定义连接监督器与具体消息客户端之间的契约。

适配器职责：
- connect(session_id, options)：为会话建立连接，返回不透明的会话句柄
- send_text(handle, recipient, body)：通过句柄发送文本，返回投递回执
- close(handle)：关闭句柄
- 通过事件总线发出 pairing / connected / state_change / inbound_message / error 事件

适配器不回调任何上层组件，所有异步状态变化都作为 TransportEvent 投递到总线，
由 ConnectionSupervisor 统一消费。

二开提示：
- 新增传输方式只需继承 TransportAdapter 并实现三个抽象方法
"""

from abc import ABC, abstractmethod
from typing import Any

from sessionmux.bus.events import TransportEvent
from sessionmux.bus.queue import EventBus


class TransportAdapter(ABC):
    """
    传输层适配器抽象基类。

    属性:
        name: 适配器标识
        bus: 事件总线
    """

    name: str = "base"

    def __init__(self, bus: EventBus):
        self.bus = bus

    async def start(self) -> None:
        """启动适配器的后台资源（可选）。"""
        pass

    @abstractmethod
    async def connect(self, session_id: str, options: dict[str, Any]) -> Any:
        """
        为会话建立连接。

        参数:
            session_id: 会话 ID
            options: 连接参数（凭据目录、headless 等）

        返回:
            会话句柄，失败时抛出异常
        """
        pass

    @abstractmethod
    async def send_text(self, handle: Any, recipient: str, body: str) -> dict[str, Any]:
        """
        通过会话句柄发送文本消息。

        返回:
            投递回执，至少包含 id
        """
        pass

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """关闭会话句柄。"""
        pass

    async def shutdown(self) -> None:
        """释放适配器的全部资源（可选）。"""
        pass

    async def emit(self, event_type: str, session_id: str, payload: dict[str, Any] | None = None) -> None:
        """向事件总线发布一条传输事件。"""
        await self.bus.publish_event(TransportEvent(type=event_type, session_id=session_id, payload=payload or {}))
