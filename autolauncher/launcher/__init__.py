"""启动器服务。"""

from autolauncher.launcher.service import Launcher

__all__ = ["Launcher"]
