"""
事件类型定义模块 - 定义事件总线中流转的数据结构。

本模块定义了三个数据类：
- TransportEvent：传输层事件（适配器 → 连接监督器）
- Notification：对外通知（各组件 → 订阅者）
- InboundMessage：解析后的入站消息（入站路由器内部使用）

传输层适配器不直接回调任何组件，而是把配对码、连接状态、入站消息
统一封装为 TransportEvent 投递到总线，由 ConnectionSupervisor 消费。

【Java 开发者类比】
- @dataclass 等价于 Java 的 record 类
- TransportEvent.type 的取值集合类似于一个字符串枚举
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# 传输事件类型
EVENT_PAIRING = "pairing"
EVENT_CONNECTED = "connected"
EVENT_STATE_CHANGE = "state_change"
EVENT_INBOUND_MESSAGE = "inbound_message"
EVENT_ERROR = "error"

TRANSPORT_EVENT_TYPES = frozenset({
    EVENT_PAIRING,
    EVENT_CONNECTED,
    EVENT_STATE_CHANGE,
    EVENT_INBOUND_MESSAGE,
    EVENT_ERROR,
})

# 对外通知名称
NOTIFICATION_NAMES = frozenset({
    "session_created",
    "session_connected",
    "session_closed",
    "session_error",
    "session_reconnected",
    "session_reconnect_failed",
    "pairing_generated",
    "pairing_scanned",
    "message_queued",
    "message_sent",
    "message_failed",
    "messages_expired",
    "queue_paused",
    "queue_resumed",
    "queue_cleared",
    "message_processed",
    "auto_response_sent",
    "listening_started",
    "listening_stopped",
})


@dataclass
class TransportEvent:
    """
    传输层事件 - 适配器发出的一次状态变化或入站消息。

    属性:
        type: 事件类型（pairing / connected / state_change / inbound_message / error）
        session_id: 事件所属会话
        payload: 事件负载，结构随 type 变化
        timestamp: 事件产生时间
    """

    type: str
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Notification:
    """对外通知。name 取值见 NOTIFICATION_NAMES。"""

    name: str
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class InboundMessage:
    """
    入站消息 - 从传输层事件负载中解析出的用户消息。

    属性:
        session_id: 收到消息的会话
        message_id: 传输层消息 ID
        sender: 发送方地址（如 "5491122334455@c.us"）
        chat_id: 会话窗口地址，群聊时与 sender 不同
        text: 文本内容
        type: 消息类型（chat / image / audio ...）
        is_group: 是否群聊
        broadcast: 是否广播消息
        push_name: 发送方昵称
        timestamp: 消息时间
        metadata: 其余原始字段
    """

    session_id: str
    message_id: str
    sender: str
    chat_id: str
    text: str
    type: str = "chat"
    is_group: bool = False
    broadcast: bool = False
    push_name: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_status(self) -> bool:
        """是否为状态/动态消息（发往 status@broadcast）。"""
        return "status@broadcast" in self.chat_id or "status@broadcast" in self.sender

    @classmethod
    def from_payload(cls, session_id: str, payload: dict[str, Any]) -> "InboundMessage":
        """
        从 inbound_message 事件负载构造入站消息。

        负载字段：id, from, to, chatId, body/text, type, isGroup/isGroupMsg,
        broadcast, pushName/notifyName, timestamp（秒级 Unix 时间戳）。
        """
        sender = str(payload.get("from") or payload.get("sender") or "")
        chat_id = str(payload.get("chatId") or payload.get("chat_id") or sender)
        ts = payload.get("timestamp")
        if isinstance(ts, (int, float)):
            timestamp = datetime.fromtimestamp(ts)
        else:
            timestamp = datetime.now()
        known = {
            "id", "from", "sender", "chatId", "chat_id", "body", "text", "type",
            "isGroup", "isGroupMsg", "is_group", "broadcast", "pushName", "notifyName",
            "push_name", "timestamp",
        }
        return cls(
            session_id=session_id,
            message_id=str(payload.get("id") or ""),
            sender=sender,
            chat_id=chat_id,
            text=str(payload.get("body") or payload.get("text") or ""),
            type=str(payload.get("type") or "chat"),
            is_group=bool(
                payload.get("isGroup") or payload.get("isGroupMsg") or payload.get("is_group")
                or chat_id.endswith("@g.us")
            ),
            broadcast=bool(payload.get("broadcast")),
            push_name=payload.get("pushName") or payload.get("notifyName") or payload.get("push_name"),
            timestamp=timestamp,
            metadata={k: v for k, v in payload.items() if k not in known},
        )
