"""
用户缓存 - 按手机号缓存用户记录，减少对记录存储的读取。

- 读取时检查 TTL，过期即删除并视为未命中
- 写满时淘汰最早插入的条目（重新写入同一 key 视为新插入）
"""

from typing import Any, Callable

from sessionmux.utils.helpers import now_ms


class UserCache:
    """
    有界 TTL 缓存。所有会话的入站处理共享一个实例，同一 key 后写覆盖先写。

    参数:
        ttl_ms: 条目有效期
        max_size: 最大条目数
        clock: 毫秒时钟
    """

    def __init__(self, ttl_ms: int = 300_000, max_size: int = 1_000, clock: Callable[[], int] = now_ms):
        self.ttl_ms = ttl_ms
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, tuple[int, dict[str, Any]]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        cached_at, data = entry
        if self._clock() - cached_at >= self.ttl_ms:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return data

    def put(self, key: str, data: dict[str, Any]) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = (self._clock(), data)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._entries), "max_size": self.max_size, "hits": self.hits, "misses": self.misses}
