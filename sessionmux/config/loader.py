"""
配置加载工具模块 (config/loader.py)
=================================
- 配置文件默认路径: ~/.sessionmux/config.json
- 配置文件使用 camelCase，Python 内部使用 snake_case
- 加载时 camelCase → snake_case，保存时 snake_case → camelCase
- 兼容扁平写法：顶层的 maxSessions、ignoreGroups 等选项会被归入所属分节，
  例如 {"maxSessions": 3} 等价于 {"connection": {"maxSessions": 3}}；
  分节内已有同名键时以分节内的值为准
"""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from sessionmux.config.schema import Config

# 扁平选项 → 所属分节
FLAT_OPTION_SECTIONS = {
    "maxSessions": "connection",
    "sessionTimeoutMs": "connection",
    "maxReconnectAttempts": "connection",
    "reconnectDelayMs": "connection",
    "maxMessagesPerMinute": "sender",
    "interMessageDelayMs": "sender",
    "maxRetries": "sender",
    "retryBaseDelayMs": "sender",
    "retryMultiplier": "sender",
    "maxQueueSize": "sender",
    "messageTimeoutMs": "sender",
    "queueMessageTtlMs": "sender",
    "pairingCodeTtlMs": "pairing",
    "aiEnabled": "listener",
    "saveMessages": "listener",
    "saveConversations": "listener",
    "ignoreBroadcast": "listener",
    "ignoreGroups": "listener",
    "ignoreStatus": "listener",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """获取默认配置文件路径: ~/.sessionmux/config.json"""
    return Path.home() / ".sessionmux" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    从 JSON 文件加载配置，若文件不存在或损坏则返回默认配置。

    参数:
        config_path: 可选的配置文件路径。为 None 时使用默认路径。

    返回:
        Config 配置对象实例
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            return Config.model_validate(convert_keys(nest_flat_options(data)))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """将配置对象以 camelCase 键名保存为 JSON 文件（总是分节写法）。"""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        json.dump(convert_to_camel(config.model_dump()), f, indent=2)


def nest_flat_options(data: Any) -> Any:
    """把顶层的扁平选项移入所属分节，返回新的字典。"""
    if not isinstance(data, dict):
        return data
    nested = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for key, section in FLAT_OPTION_SECTIONS.items():
        if key not in nested:
            continue
        value = nested.pop(key)
        target = nested.setdefault(section, {})
        if isinstance(target, dict):
            target.setdefault(key, value)
    return nested


def convert_keys(data: Any) -> Any:
    """递归地把字典键名从 camelCase 转为 snake_case。"""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """递归地把字典键名从 snake_case 转为 camelCase。"""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """例: "maxMessagesPerMinute" → "max_messages_per_minute" """
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    """例: "ai_max_history" → "aiMaxHistory" """
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
