"""自动回复生成器模块。"""

from sessionmux.config.schema import ResponderConfig
from sessionmux.responder.base import AutoResponder
from sessionmux.responder.keyword import KeywordResponder
from sessionmux.responder.litellm_responder import LiteLLMResponder

__all__ = ["AutoResponder", "KeywordResponder", "LiteLLMResponder", "create_responder"]


def create_responder(config: ResponderConfig) -> AutoResponder | None:
    """按配置创建回复生成器。kind 为 "none" 时返回 None。"""
    if config.kind == "none":
        return None
    if config.kind == "keyword":
        return KeywordResponder()
    if config.kind == "litellm":
        return LiteLLMResponder(config)
    raise ValueError(f"Unknown responder kind: {config.kind}")
