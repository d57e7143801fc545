"""事件总线的事件类型。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from autolauncher.process.types import RunRecord
    from autolauncher.schedule.types import Schedule, ScheduleEntry


@dataclass(frozen=True)
class Event:
    """所有事件的基类。name 是对外的事件名。"""
    name: ClassVar[str] = "event"


@dataclass(frozen=True)
class TriggerFired(Event):
    """触发引擎：某个条目到点了。"""
    name: ClassVar[str] = "trigger"

    schedule: Schedule
    entry: ScheduleEntry
    fired_at_ms: int


@dataclass(frozen=True)
class RunRequested(Event):
    """仲裁器：运行已准入，请求进程监督器执行。"""
    name: ClassVar[str] = "run:requested"

    run_id: str
    schedule_id: str
    entry_id: str
    scenario_id: str
    resource_id: str
    max_duration_ms: int
    attempt: int = 1


@dataclass(frozen=True)
class RunQueued(Event):
    name: ClassVar[str] = "run:queued"

    schedule_id: str
    entry_id: str
    resource_id: str
    reason: str  # global-limit、schedule-limit、resource-busy、awaiting-kill
    queue_position: int


@dataclass(frozen=True)
class RunSkipped(Event):
    name: ClassVar[str] = "run:skipped"

    schedule_id: str
    entry_id: str
    scenario_id: str
    resource_id: str
    reason: str  # manual-skip、resource-busy、superseded、unregistered


@dataclass(frozen=True)
class RunKillRequested(Event):
    name: ClassVar[str] = "run:kill-requested"

    run_id: str
    reason: str


@dataclass(frozen=True)
class RunRetryScheduled(Event):
    name: ClassVar[str] = "run:retry-scheduled"

    schedule_id: str
    entry_id: str
    attempt: int
    delay_ms: int


@dataclass(frozen=True)
class RunStarted(Event):
    name: ClassVar[str] = "run:started"

    run_id: str
    schedule_id: str
    entry_id: str
    pid: int
    started_at_ms: int
    scenario: str
    resource: str


@dataclass(frozen=True)
class RunOutput(Event):
    name: ClassVar[str] = "run:output"

    run_id: str
    stream: str  # stdout 或 stderr
    data: str


@dataclass(frozen=True)
class RunTimeout(Event):
    name: ClassVar[str] = "run:timeout"

    run_id: str
    stage: str  # graceful 或 force


@dataclass(frozen=True)
class RunExit(Event):
    """进程监督器：运行进入终态。"""
    name: ClassVar[str] = "run:exit"

    run_id: str
    record: RunRecord
    log_buffer: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TriggerError(Event):
    name: ClassVar[str] = "trigger:error"

    schedule_id: str
    entry_id: str
    error: str


@dataclass(frozen=True)
class EntryError(Event):
    name: ClassVar[str] = "entry:error"

    schedule_id: str
    entry_id: str
    error: str


EVENT_TYPES: tuple[type[Event], ...] = (
    TriggerFired,
    RunRequested,
    RunQueued,
    RunSkipped,
    RunKillRequested,
    RunRetryScheduled,
    RunStarted,
    RunOutput,
    RunTimeout,
    RunExit,
    TriggerError,
    EntryError,
)
