"""
LiteLLM 回复生成器 - 通过 litellm.acompletion 调用任意 LLM 服务商生成回复。

调用失败时返回 None（不回复），不会打断入站处理流程。
"""

from typing import Any

from litellm import acompletion
from loguru import logger

from sessionmux.config.schema import ResponderConfig
from sessionmux.responder.base import AutoResponder


class LiteLLMResponder(AutoResponder):
    """
    基于 LiteLLM 的回复生成器。

    参数:
        config: 回复生成器配置（model、api_key、api_base、max_tokens、temperature、system_prompt）
    """

    name = "litellm"

    def __init__(self, config: ResponderConfig):
        self.config = config

    def build_messages(self, text: str, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """system 提示 + 历史 + 当前消息。历史末尾若已是当前消息则不重复追加。"""
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.config.system_prompt}]
        for item in history:
            role = item.get("role")
            content = item.get("content")
            if role in ("user", "assistant") and content:
                messages.append({"role": role, "content": content})
        if len(messages) == 1 or messages[-1] != {"role": "user", "content": text}:
            messages.append({"role": "user", "content": text})
        return messages

    async def generate(self, text: str, history: list[dict[str, Any]]) -> str | None:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self.build_messages(text, history),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"Error calling LLM ({self.config.model}): {e}")
            return None

        content = response.choices[0].message.content if response.choices else None
        return content.strip() if content else None
