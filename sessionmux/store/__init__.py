"""记录存储模块 - 会话元数据、消息、用户与对话日志的持久化。"""

from sessionmux.store.base import RecordStore
from sessionmux.store.json_store import JsonRecordStore
from sessionmux.store.memory import MemoryRecordStore

__all__ = ["RecordStore", "MemoryRecordStore", "JsonRecordStore", "create_store"]


def create_store(kind: str, path=None) -> RecordStore:
    """按配置创建记录存储。kind 为 "memory" 或 "json"。"""
    if kind == "memory":
        return MemoryRecordStore()
    if kind == "json":
        if path is None:
            raise ValueError("JSON record store requires a path")
        return JsonRecordStore(path)
    raise ValueError(f"Unknown record store kind: {kind}")
