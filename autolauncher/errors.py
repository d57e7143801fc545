"""autolauncher 的异常类型。"""


class AutolauncherError(Exception):
    """所有 autolauncher 错误的基类。"""


class ConfigError(AutolauncherError):
    """调度条目或配置无效（例如格式错误的 cron 表达式）。"""

    def __init__(self, message: str, entry_id: str | None = None):
        super().__init__(message)
        self.entry_id = entry_id


class SpawnError(AutolauncherError):
    """无法为运行创建外部进程。"""

    def __init__(self, message: str, run_id: str | None = None):
        super().__init__(message)
        self.run_id = run_id
