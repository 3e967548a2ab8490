"""
异常体系 - sessionmux 所有对外抛出的错误。

分类（按调用方应如何应对划分）：
- ValidationError      调用方参数错误（非法 ID、空消息、超长、不支持的格式），不可重试
- CapacityError        容量/限流（会话数上限、队列满、速率超限），调用方应退避
- NotFoundError        会话不存在
- NotConnectedError    会话存在但尚未就绪，调用方稍后重试
- TransportError       传输层失败；排队发送时自动重试，立即发送时直接抛出
- RetryExhaustedError  重试次数耗尽，终态
- ConfigurationError   初始化时配置非法，致命
- NotInitializedError  组件未初始化就被调用

每个异常都带有稳定的机器可读 code 与可选的 session_id，
to_dict() 便于嵌入方（HTTP/RPC 层）直接映射为响应体。
"""

from typing import Any


class SessionMuxError(Exception):
    """所有 sessionmux 异常的基类。"""

    code = "error"

    def __init__(self, message: str, session_id: str | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.session_id is not None:
            data["session_id"] = self.session_id
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(SessionMuxError):
    code = "validation_error"


class InvalidIdentifierError(ValidationError):
    code = "invalid_identifier"


class DuplicateSessionError(ValidationError):
    code = "duplicate_session"


class UnsupportedFormatError(ValidationError):
    code = "unsupported_format"


class CapacityError(SessionMuxError):
    code = "capacity_exceeded"


class QueueFullError(CapacityError):
    code = "queue_full"


class RateLimitExceededError(CapacityError):
    code = "rate_limit_exceeded"


class NotFoundError(SessionMuxError):
    code = "not_found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


class NotConnectedError(SessionMuxError):
    code = "not_connected"


class SessionNotConnectedError(NotConnectedError):
    code = "session_not_connected"


class TransportError(SessionMuxError):
    code = "transport_error"


class TransportConnectionError(TransportError):
    code = "connection_error"


class DeliveryTimeoutError(TransportError):
    code = "timeout"


class RetryExhaustedError(SessionMuxError):
    code = "retry_exhausted"


class ConfigurationError(SessionMuxError):
    code = "configuration_error"


class NotInitializedError(SessionMuxError):
    code = "not_initialized"
