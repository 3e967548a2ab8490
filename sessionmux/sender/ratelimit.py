"""
固定窗口限流器 - 按 key（通常是会话 ID）统计窗口内的发送次数。

规则：
- 窗口长度固定（默认 1 分钟），从该 key 第一次记录时开始计时
- sent_count < limit 时允许发送
- now >= window_reset_at 时惰性翻窗：计数清零，window_reset_at = now + 窗口长度
"""

from dataclasses import dataclass
from typing import Any, Callable

from sessionmux.utils.helpers import now_ms

WINDOW_MS = 60_000


@dataclass
class RateLimiterState:
    sent_count: int
    window_reset_at_ms: int


class RateLimiter:
    """
    固定窗口限流器。

    参数:
        limit: 每个窗口允许的次数
        window_ms: 窗口长度（毫秒）
        clock: 毫秒时钟
    """

    def __init__(self, limit: int, window_ms: int = WINDOW_MS, clock: Callable[[], int] = now_ms):
        self.limit = limit
        self.window_ms = window_ms
        self._clock = clock
        self._states: dict[str, RateLimiterState] = {}

    def _state(self, key: str) -> RateLimiterState:
        now = self._clock()
        state = self._states.get(key)
        if state is None:
            state = RateLimiterState(sent_count=0, window_reset_at_ms=now + self.window_ms)
            self._states[key] = state
        elif now >= state.window_reset_at_ms:
            state.sent_count = 0
            state.window_reset_at_ms = now + self.window_ms
        return state

    def check(self, key: str) -> bool:
        """当前窗口内是否还允许发送（不计数）。"""
        return self._state(key).sent_count < self.limit

    def record(self, key: str) -> None:
        """记录一次发送。"""
        self._state(key).sent_count += 1

    def try_acquire(self, key: str) -> bool:
        """允许则计数并返回 True，否则返回 False。"""
        state = self._state(key)
        if state.sent_count >= self.limit:
            return False
        state.sent_count += 1
        return True

    def time_until_reset(self, key: str) -> int:
        """距离当前窗口结束的毫秒数，未记录过的 key 返回 0。"""
        state = self._states.get(key)
        if state is None:
            return 0
        return max(0, state.window_reset_at_ms - self._clock())

    def snapshot(self, key: str) -> dict[str, Any]:
        state = self._state(key)
        return {
            "current": state.sent_count,
            "max": self.limit,
            "reset_at_ms": state.window_reset_at_ms,
            "time_to_reset_ms": max(0, state.window_reset_at_ms - self._clock()),
        }

    def remove(self, key: str) -> None:
        self._states.pop(key, None)

    def clear(self) -> None:
        self._states.clear()
