"""
周期任务 - 以固定间隔在后台执行一个异步回调。

连接监督器的空闲会话清理、配对码缓存的过期清理、出站队列的过期消息清理
都基于同一个模式：启动一个 asyncio.Task，循环 sleep → 执行 → sleep。
单次执行抛出的异常只记录日志，不会终止循环。
"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


class PeriodicTask:
    """
    周期任务。

    参数:
        name: 任务名，用于日志
        interval_ms: 执行间隔（毫秒）
        callback: 每个周期执行的异步回调
    """

    def __init__(self, name: str, interval_ms: int, callback: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval_ms = interval_ms
        self.callback = callback
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """启动循环。重复调用无副作用。"""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.debug(f"Periodic task '{self.name}' started (every {self.interval_ms}ms)")

    def stop(self) -> None:
        """停止循环并取消后台任务。"""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_ms / 1000)
                if self._running:
                    await self.callback()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Periodic task '{self.name}' error: {e}")
