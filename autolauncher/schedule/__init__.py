"""调度：节奏计算、触发引擎与并发仲裁器。"""

from autolauncher.schedule.arbiter import ConcurrencyArbiter
from autolauncher.schedule.engine import TriggerEngine
from autolauncher.schedule.types import Cadence, RetryPolicy, Schedule, ScheduleEntry, UpcomingRun

__all__ = [
    "TriggerEngine",
    "ConcurrencyArbiter",
    "Cadence",
    "RetryPolicy",
    "Schedule",
    "ScheduleEntry",
    "UpcomingRun",
]
