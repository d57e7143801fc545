"""用于解耦触发、仲裁与进程监督的事件总线模块。"""

from autolauncher.bus.events import (
    EVENT_TYPES,
    EntryError,
    Event,
    RunExit,
    RunKillRequested,
    RunOutput,
    RunQueued,
    RunRequested,
    RunRetryScheduled,
    RunSkipped,
    RunStarted,
    RunTimeout,
    TriggerError,
    TriggerFired,
)
from autolauncher.bus.queue import EventBus

__all__ = [
    "EventBus",
    "EVENT_TYPES",
    "Event",
    "TriggerFired",
    "RunRequested",
    "RunQueued",
    "RunSkipped",
    "RunKillRequested",
    "RunRetryScheduled",
    "RunStarted",
    "RunOutput",
    "RunTimeout",
    "RunExit",
    "TriggerError",
    "EntryError",
]
