"""配置模块。"""

from sessionmux.config.loader import get_config_path, load_config, save_config
from sessionmux.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
