"""
自动回复生成器抽象接口。

InboundRouter 只调用 generate()，限流、延迟与发送都由路由器负责。
"""

from abc import ABC, abstractmethod
from typing import Any


class AutoResponder(ABC):
    """
    自动回复生成器基类。

    history 为按时间先后排列的对话记录，每条形如
    {"role": "user" | "assistant", "content": "..."}。
    """

    name: str = "base"

    @abstractmethod
    async def generate(self, text: str, history: list[dict[str, Any]]) -> str | None:
        """
        根据入站文本与历史生成回复。

        返回:
            回复文本；不需要回复时返回 None
        """
        pass
