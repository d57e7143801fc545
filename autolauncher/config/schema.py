"""使用 Pydantic 的配置模式。"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autolauncher.process.supervisor import LaunchSettings
from autolauncher.process.types import Resource, Scenario
from autolauncher.schedule.types import Cadence, RetryPolicy, Schedule, ScheduleEntry
from autolauncher.utils.helpers import parse_local_iso


def _coerce_id(value: Any) -> Any:
    # 旧版场景 ID 是数字
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class SchedulerConfig(BaseModel):
    """调度核心配置。"""
    global_concurrency_limit: int = Field(default=3, ge=1)
    grace_window_ms: int = Field(default=10_000, ge=0)  # 优雅信号与强制终止之间的宽限窗口
    log_buffer_lines: int = Field(default=1000, ge=1)
    kill_previous_waits_for_exit: bool = True


class LauncherConfig(BaseModel):
    """场景进程的默认启动方式。"""
    command: str = "java"
    args: list[str] = Field(default_factory=lambda: ["-jar", "hafen.jar", "-bots", "{bot_config}"])
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    scratch_dir: str | None = None  # 临时凭据文件目录，None 表示系统临时目录
    require_credentials: bool = True


class LedgerConfig(BaseModel):
    """运行历史配置。"""
    dir: str = "~/.autolauncher/run-history"
    retention_days: int = Field(default=14, ge=1)

    @property
    def path(self) -> Path:
        return Path(self.dir).expanduser()


class ScenarioConfig(BaseModel):
    id: str
    name: str
    command: str | None = None
    args: list[str] | None = None
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    def to_scenario(self) -> Scenario:
        return Scenario(
            id=self.id,
            name=self.name,
            command=self.command,
            args=tuple(self.args) if self.args is not None else None,
            cwd=self.cwd,
            env=dict(self.env),
        )


class CharacterConfig(BaseModel):
    id: str
    name: str
    credential_id: str | None = None


class CredentialConfig(BaseModel):
    """文件凭据。"""
    id: str
    username: str = ""
    password: str = ""


class CadenceConfig(BaseModel):
    """磁盘上的节奏：cron、every 或 once。"""
    type: str  # cron、every 或 once，未知类型在注册时报告
    expression: str | None = None  # cron
    tz: str | None = None  # cron，None 表示本地时间
    unit: str | None = None  # every：minutes 或 hours
    n: int | None = None  # every
    start_time: str | None = None  # every 的锚点（ISO 时间）
    at: str | None = None  # once（ISO 时间）

    def to_cadence(self) -> Cadence:
        """
        转换为调度核心的节奏。

        格式错误的 ISO 时间不会让整个配置加载失败：错误记录在节奏上，
        注册时只有该条目通过 entry:error 报告。
        """
        if self.type == "cron":
            return Cadence(kind="cron", expr=self.expression, tz=self.tz)
        if self.type == "every":
            try:
                anchor = parse_local_iso(self.start_time) if self.start_time else None
            except ValueError:
                return Cadence(kind="every", unit=self.unit, n=self.n, error=f"无效的锚点时间：{self.start_time}")
            return Cadence(kind="every", unit=self.unit, n=self.n, anchor_ms=anchor)
        if self.type == "once":
            try:
                at_ms = parse_local_iso(self.at) if self.at else None
            except ValueError:
                return Cadence(kind="once", error=f"无效的目标时间：{self.at}")
            return Cadence(kind="once", at_ms=at_ms)
        return Cadence(kind=self.type)


class RetryConfig(BaseModel):
    max: int = Field(default=0, ge=0)
    backoff_ms: int = Field(default=0, ge=0)


class EntryConfig(BaseModel):
    """调度条目：在某个角色上按节奏运行某个场景。"""
    id: str
    scenario_id: str
    character_id: str
    cadence: CadenceConfig
    max_duration_ms: int
    overlap_policy: Literal["skip", "queue", "kill-previous"] = "skip"
    retry: RetryConfig | None = None
    enabled: bool = True

    @field_validator("scenario_id", mode="before")
    @classmethod
    def coerce_scenario_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    def to_entry(self) -> ScheduleEntry:
        retry = None
        if self.retry and self.retry.max > 0:
            retry = RetryPolicy(max=self.retry.max, backoff_ms=self.retry.backoff_ms)
        return ScheduleEntry(
            id=self.id,
            scenario_id=self.scenario_id,
            resource_id=self.character_id,
            cadence=self.cadence.to_cadence(),
            max_duration_ms=self.max_duration_ms,
            overlap_policy=self.overlap_policy,
            retry=retry,
            enabled=self.enabled,
        )


class ScheduleConfig(BaseModel):
    id: str
    name: str
    enabled: bool = True
    concurrency_limit: int | None = Field(default=None, ge=1)
    entries: list[EntryConfig] = Field(default_factory=list)

    def to_schedule(self) -> Schedule:
        return Schedule(
            id=self.id,
            name=self.name,
            enabled=self.enabled,
            concurrency_limit=self.concurrency_limit,
            entries=tuple(e.to_entry() for e in self.entries),
        )


class ConfigCatalog:
    """按 ID 查找场景和角色。"""

    def __init__(self, scenarios: list[Scenario], resources: list[Resource]):
        self._scenarios = {s.id: s for s in scenarios}
        self._resources = {r.id: r for r in resources}

    def get_scenario(self, scenario_id: str) -> Scenario | None:
        return self._scenarios.get(str(scenario_id))

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._resources.get(resource_id)


class Config(BaseSettings):
    """autolauncher 的根配置。"""
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    scenarios: list[ScenarioConfig] = Field(default_factory=list)
    characters: list[CharacterConfig] = Field(default_factory=list)
    credentials: list[CredentialConfig] = Field(default_factory=list)
    schedules: list[ScheduleConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="AUTOLAUNCHER_", env_nested_delimiter="__")

    def to_schedules(self) -> list[Schedule]:
        """转换为调度核心使用的不可变调度。"""
        return [s.to_schedule() for s in self.schedules]

    def catalog(self) -> ConfigCatalog:
        return ConfigCatalog(
            scenarios=[s.to_scenario() for s in self.scenarios],
            resources=[Resource(id=c.id, name=c.name, credential_id=c.credential_id) for c in self.characters],
        )

    def launch_settings(self) -> LaunchSettings:
        return LaunchSettings(
            command=self.launcher.command,
            args=tuple(self.launcher.args),
            cwd=self.launcher.cwd,
            env=dict(self.launcher.env),
            scratch_dir=self.launcher.scratch_dir,
            require_credentials=self.launcher.require_credentials,
        )

    def get_character(self, character_id: str) -> CharacterConfig | None:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    def get_credential(self, credential_id: str) -> CredentialConfig | None:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None
