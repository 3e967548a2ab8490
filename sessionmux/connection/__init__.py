"""连接监督模块 - 会话状态机与传输层句柄的唯一所有者。"""

from sessionmux.connection.supervisor import ConnectionSupervisor, Session, SessionStatus

__all__ = ["ConnectionSupervisor", "Session", "SessionStatus"]
