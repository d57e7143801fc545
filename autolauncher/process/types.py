"""进程监督相关的类型与协作方协议。"""

import asyncio
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

RunStatus = Literal["success", "error", "timeout", "killed", "skipped"]


class RunState(str, Enum):
    """单次运行的状态机。"""
    STARTING = "starting"
    RUNNING = "running"
    GRACEFUL_STOP = "graceful_stop"
    KILLING = "killing"
    EXITED = "exited"


@dataclass(frozen=True)
class Scenario:
    """要运行的外部场景。command 为空时使用启动器的默认命令。"""
    id: str
    name: str
    command: str | None = None
    args: tuple[str, ...] | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Resource:
    """互斥的执行上下文（角色）。"""
    id: str
    name: str
    credential_id: str | None = None


@dataclass(frozen=True)
class CredentialSecret:
    username: str
    password: str


@dataclass(frozen=True)
class RunRecord:
    """交给运行账本的终态记录，创建后不再修改。"""
    ts: str
    run_id: str
    entry_id: str
    schedule_id: str
    scenario_id: str
    resource_id: str
    status: RunStatus
    duration_ms: int
    exit_code: int | None = None
    signal: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """序列化为 camelCase 字典，省略空字段。"""
        data = {
            "ts": self.ts,
            "runId": self.run_id,
            "entryId": self.entry_id,
            "scheduleId": self.schedule_id,
            "scenarioId": self.scenario_id,
            "characterId": self.resource_id,
            "status": self.status,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "signal": self.signal,
            "error": self.error,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        return cls(
            ts=data["ts"],
            run_id=data["runId"],
            entry_id=data["entryId"],
            schedule_id=data.get("scheduleId", ""),
            scenario_id=str(data.get("scenarioId", "")),
            resource_id=data.get("characterId", ""),
            status=data["status"],
            duration_ms=data.get("durationMs", 0),
            exit_code=data.get("exitCode"),
            signal=data.get("signal"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class ActiveRunInfo:
    """活跃运行的只读快照。"""
    run_id: str
    entry_id: str
    schedule_id: str
    pid: int | None
    started_at_ms: int
    elapsed_ms: int
    remaining_ms: int
    state: RunState

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class Catalog(Protocol):
    """配置层提供的按 ID 查找。"""

    def get_scenario(self, scenario_id: str) -> Scenario | None: ...

    def get_resource(self, resource_id: str) -> Resource | None: ...


class SecretResolver(Protocol):
    """凭据协作方：每次启动运行时调用一次，核心从不缓存结果。"""

    async def resolve_secret(self, resource_id: str) -> CredentialSecret | None: ...


class ProcessHandle(Protocol):
    """已启动进程的句柄。asyncio.subprocess.Process 满足此协议。"""

    pid: int
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None
    returncode: int | None

    def send_signal(self, sig: int) -> None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class Spawner(Protocol):
    """进程执行原语。"""

    async def __call__(
        self,
        command: str,
        args: list[str],
        cwd: str | None,
        env: dict[str, str],
    ) -> ProcessHandle: ...
