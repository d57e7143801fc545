"""autolauncher 的配置模块。"""

from autolauncher.config.loader import get_config_path, load_config, save_config
from autolauncher.config.schema import Config, ConfigCatalog

__all__ = ["Config", "ConfigCatalog", "load_config", "save_config", "get_config_path"]
