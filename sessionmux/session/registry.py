"""
会话注册表 - 保存每个会话的持久化元数据、状态和消息统计。

与 ConnectionSupervisor 的区别：
- ConnectionSupervisor 只管进程内存活的连接（进程重启即丢失）
- SessionRegistry 的记录通过 RecordStore 落盘，进程重启后仍然存在

采用"内存缓存 + 存储持久化"的双层结构：
- 内存层（_cache）：所有读操作直接返回缓存的副本
- 存储层（sessions 集合）：状态/元数据变化时立即写入，消息计数每 10 条写入一次

二开提示：
- 可在 SessionRecord.metadata 中扩展业务字段（租户、活动编号等）
"""

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from sessionmux.errors import DuplicateSessionError, NotInitializedError, SessionNotFoundError
from sessionmux.store.base import RecordStore

COLLECTION = "sessions"

# 消息计数累计到该倍数时落盘
PERSIST_EVERY_MESSAGES = 10

ACTIVITY_KINDS = frozenset({
    "message_sent",
    "message_received",
    "connection_attempt",
    "connection_success",
    "disconnection",
    "error",
})


@dataclass
class SessionStats:
    """会话累计统计。"""

    total_messages: int = 0
    total_messages_sent: int = 0
    total_messages_received: int = 0
    last_message_at: str | None = None
    connection_attempts: int = 0
    successful_connections: int = 0
    errors: int = 0


@dataclass
class SessionRecord:
    """
    会话的持久化记录。

    属性:
        session_id: 会话 ID
        created_at: 创建时间（ISO 字符串）
        last_used: 最近一次活动时间（ISO 字符串）
        status: 最近一次记录的状态
        metadata: 描述、标签等自由字段
        stats: 累计统计
    """

    session_id: str
    created_at: str
    last_used: str
    status: str = "created"
    metadata: dict[str, Any] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        stats_data = data.get("stats") or {}
        known = SessionStats.__dataclass_fields__
        return cls(
            session_id=data["session_id"],
            created_at=data["created_at"],
            last_used=data.get("last_used") or data["created_at"],
            status=data.get("status", "created"),
            metadata=dict(data.get("metadata") or {}),
            stats=SessionStats(**{k: v for k, v in stats_data.items() if k in known}),
        )


def is_valid_record(data: Any) -> bool:
    """结构校验：必须是包含 session_id 与 created_at 的字典，stats 若存在必须是字典。"""
    return (
        isinstance(data, dict)
        and isinstance(data.get("session_id"), str)
        and isinstance(data.get("created_at"), str)
        and isinstance(data.get("stats", {}), dict)
        and isinstance(data.get("metadata", {}), dict)
    )


class SessionRegistry:
    """
    会话注册表。

    参数:
        store: 记录存储
    """

    def __init__(self, store: RecordStore):
        self.store = store
        self._cache: dict[str, SessionRecord] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> int:
        """
        从存储加载全部会话记录，结构不合法的记录跳过并记录警告。

        返回:
            成功加载的记录数
        """
        records = await self.store.query(COLLECTION)
        self._cache.clear()
        for data in records:
            if not is_valid_record(data):
                logger.warning(f"Skipping invalid session record: {data!r:.200}")
                continue
            try:
                record = SessionRecord.from_dict(data)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed session record: {e}")
                continue
            self._cache[record.session_id] = record
        self._initialized = True
        logger.info(f"Session registry loaded {len(self._cache)} record(s)")
        return len(self._cache)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Session registry is not initialized")

    async def _persist(self, record: SessionRecord) -> None:
        await self.store.put(COLLECTION, record.session_id, record.to_dict())

    async def create(self, session_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """创建新记录，已存在时抛出 DuplicateSessionError。"""
        self._ensure_initialized()
        if session_id in self._cache:
            raise DuplicateSessionError(f"Session record {session_id} already exists", session_id=session_id)

        now = datetime.now().isoformat()
        meta = {
            "description": f"Session {session_id}",
            "tags": [],
        }
        meta.update(metadata or {})
        record = SessionRecord(session_id=session_id, created_at=now, last_used=now, metadata=meta)
        self._cache[session_id] = record
        await self._persist(record)
        logger.info(f"Session record created: {session_id}")
        return record.to_dict()

    async def get_or_create(self, session_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """已存在时合并 metadata 并返回，否则新建。"""
        self._ensure_initialized()
        if session_id not in self._cache:
            return await self.create(session_id, metadata)
        if metadata:
            return await self.update(session_id, metadata=metadata)
        return self._cache[session_id].to_dict()

    def get(self, session_id: str) -> dict[str, Any] | None:
        record = self._cache.get(session_id)
        return copy.deepcopy(record.to_dict()) if record else None

    def has(self, session_id: str) -> bool:
        return session_id in self._cache

    def list_records(self, status: str | None = None) -> list[dict[str, Any]]:
        """列出全部记录（可按状态过滤），按创建时间排序。"""
        records = sorted(self._cache.values(), key=lambda r: r.created_at)
        return [r.to_dict() for r in records if status is None or r.status == status]

    async def update(
        self,
        session_id: str,
        status: str | None = None,
        metadata: dict[str, Any] | None = None,
        stats: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        更新状态/元数据/统计并立即落盘。

        metadata 与 stats 均为浅合并。
        """
        self._ensure_initialized()
        record = self._cache.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session record {session_id} not found", session_id=session_id)

        if status is not None:
            record.status = status
        if metadata:
            record.metadata.update(metadata)
        if stats:
            for key, value in stats.items():
                if hasattr(record.stats, key):
                    setattr(record.stats, key, value)
        record.last_used = datetime.now().isoformat()
        await self._persist(record)
        return record.to_dict()

    async def record_activity(self, session_id: str, kind: str) -> bool:
        """
        记录一次会话活动并更新统计。

        参数:
            session_id: 会话 ID
            kind: 活动类型，见 ACTIVITY_KINDS

        返回:
            记录不存在或类型未知时返回 False
        """
        record = self._cache.get(session_id)
        if record is None:
            logger.warning(f"Activity '{kind}' for unknown session record {session_id}")
            return False
        if kind not in ACTIVITY_KINDS:
            logger.warning(f"Unknown activity kind '{kind}' for session {session_id}")
            return False

        now = datetime.now().isoformat()
        stats = record.stats
        record.last_used = now
        persist = False

        if kind in ("message_sent", "message_received"):
            stats.total_messages += 1
            stats.last_message_at = now
            if kind == "message_sent":
                stats.total_messages_sent += 1
            else:
                stats.total_messages_received += 1
            persist = stats.total_messages % PERSIST_EVERY_MESSAGES == 0
        elif kind == "connection_attempt":
            stats.connection_attempts += 1
            persist = True
        elif kind == "connection_success":
            stats.successful_connections += 1
            record.status = "connected"
            persist = True
        elif kind == "disconnection":
            record.status = "disconnected"
            persist = True
        elif kind == "error":
            stats.errors += 1
            record.status = "error"
            persist = True

        if persist:
            await self._persist(record)
        return True

    async def delete(self, session_id: str) -> bool:
        """删除记录（缓存与存储）。"""
        existed = self._cache.pop(session_id, None) is not None
        await self.store.delete(COLLECTION, session_id)
        if existed:
            logger.info(f"Session record deleted: {session_id}")
        return existed

    async def cleanup_inactive(self, max_inactive_hours: float = 24) -> list[str]:
        """删除超过 max_inactive_hours 未活动且状态不是 connected 的记录，返回被删除的 ID。"""
        cutoff = datetime.now() - timedelta(hours=max_inactive_hours)
        stale = [
            r.session_id for r in self._cache.values()
            if r.status != "connected" and datetime.fromisoformat(r.last_used) < cutoff
        ]
        for session_id in stale:
            await self.delete(session_id)
        if stale:
            logger.info(f"Cleaned up {len(stale)} inactive session record(s)")
        return stale

    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for record in self._cache.values():
            by_status[record.status] = by_status.get(record.status, 0) + 1
        return {
            "total": len(self._cache),
            "by_status": by_status,
            "total_messages": sum(r.stats.total_messages for r in self._cache.values()),
            "total_messages_sent": sum(r.stats.total_messages_sent for r in self._cache.values()),
            "total_messages_received": sum(r.stats.total_messages_received for r in self._cache.values()),
        }

    async def flush(self) -> None:
        """把所有缓存记录写回存储。"""
        for record in self._cache.values():
            await self._persist(record)

    async def destroy(self) -> None:
        if self._initialized:
            await self.flush()
        self._cache.clear()
        self._initialized = False
