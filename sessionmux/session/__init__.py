"""会话注册表模块 - 会话的持久化元数据与统计。"""

from sessionmux.session.registry import SessionRecord, SessionRegistry, SessionStats

__all__ = ["SessionRegistry", "SessionRecord", "SessionStats"]
