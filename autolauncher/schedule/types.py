"""调度类型。"""

from dataclasses import dataclass
from typing import Any, Literal

OverlapPolicy = Literal["skip", "queue", "kill-previous"]
IntervalUnit = Literal["minutes", "hours"]
CadenceKind = Literal["cron", "every", "once"]

OVERLAP_POLICIES: tuple[str, ...] = ("skip", "queue", "kill-previous")


@dataclass(frozen=True)
class Cadence:
    """调度条目的触发规则。"""
    kind: CadenceKind
    # For "cron": cron expression (e.g. "0 9 * * *")
    # 对于 "cron"：cron 表达式（例如 "0 9 * * *"）
    expr: str | None = None
    # cron 表达式的时区，None 表示本地时间
    tz: str | None = None
    # For "every": unit and count
    # 对于 "every"：单位和数量
    unit: IntervalUnit | None = None
    n: int | None = None
    # 可选的锚点时间（毫秒时间戳），所有触发都与其保持相位一致
    anchor_ms: int | None = None
    # For "once": timestamp in ms
    # 对于 "once"：毫秒时间戳
    at_ms: int | None = None
    # 从配置转换时发现的格式错误，注册时作为 ConfigError 报告
    error: str | None = None

    @classmethod
    def cron(cls, expr: str, tz: str | None = None) -> "Cadence":
        return cls(kind="cron", expr=expr, tz=tz)

    @classmethod
    def every(cls, unit: IntervalUnit, n: int, anchor_ms: int | None = None) -> "Cadence":
        return cls(kind="every", unit=unit, n=n, anchor_ms=anchor_ms)

    @classmethod
    def once(cls, at_ms: int) -> "Cadence":
        return cls(kind="once", at_ms=at_ms)

    @property
    def recurring(self) -> bool:
        return self.kind != "once"

    def describe(self) -> str:
        """人类可读的描述。"""
        if self.kind == "cron":
            return f"cron {self.expr}"
        if self.kind == "every":
            return f"every {self.n} {self.unit}"
        return "once"


@dataclass(frozen=True)
class RetryPolicy:
    """失败后的重试策略。"""
    max: int
    backoff_ms: int


@dataclass(frozen=True)
class ScheduleEntry:
    """调度中的单个条目：在某个角色上按节奏运行某个场景。"""
    id: str
    scenario_id: str
    resource_id: str  # 角色 ID
    cadence: Cadence
    max_duration_ms: int
    overlap_policy: OverlapPolicy = "skip"
    retry: RetryPolicy | None = None
    enabled: bool = True


@dataclass(frozen=True)
class Schedule:
    """一组条目，带有可选的并发上限。"""
    id: str
    name: str
    enabled: bool = True
    concurrency_limit: int | None = None
    entries: tuple[ScheduleEntry, ...] = ()

    def find_entry(self, entry_id: str) -> ScheduleEntry | None:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None


@dataclass
class Job:
    """一个已布防条目的运行时状态（仅存在于内存中）。"""
    entry_id: str
    schedule_id: str
    cadence: Cadence
    schedule: Schedule
    entry: ScheduleEntry
    handle: Any = None  # TimerHandle
    next_run_at_ms: int | None = None
    last_run_at_ms: int | None = None
    registered_at_ms: int = 0


@dataclass(frozen=True)
class UpcomingRun:
    """即将发生的一次触发。"""
    entry_id: str
    schedule_id: str
    scenario_id: str
    resource_id: str
    next_run_at_ms: int
    cadence_label: str


@dataclass
class QueuedRun:
    """等待角色空闲或并发名额的运行。"""
    schedule: Schedule
    entry: ScheduleEntry
    enqueued_at_ms: int
    seq: int = 0
    attempt: int = 1
    reason: str = "resource-busy"

    @property
    def entry_id(self) -> str:
        return self.entry.id

    @property
    def resource_id(self) -> str:
        return self.entry.resource_id


@dataclass
class Admission:
    """仲裁器记录的一次已准入（活跃）运行。"""
    run_id: str
    schedule_id: str
    entry_id: str
    resource_id: str
    attempt: int = 1
    admitted_at_ms: int = 0
