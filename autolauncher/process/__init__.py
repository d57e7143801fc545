"""进程监督：启动外部场景进程并执行超时终止。"""

from autolauncher.process.logbuffer import LogBuffer
from autolauncher.process.supervisor import LaunchSettings, ProcessSupervisor, spawn_subprocess
from autolauncher.process.types import (
    ActiveRunInfo,
    CredentialSecret,
    Resource,
    RunRecord,
    RunState,
    Scenario,
)

__all__ = [
    "ProcessSupervisor",
    "LaunchSettings",
    "LogBuffer",
    "spawn_subprocess",
    "ActiveRunInfo",
    "CredentialSecret",
    "Resource",
    "RunRecord",
    "RunState",
    "Scenario",
]
