"""计时器原语：真实事件循环实现与测试用虚拟时钟。"""

from autolauncher.timer.asyncio_timer import AsyncioTimer
from autolauncher.timer.base import Timer, TimerHandle
from autolauncher.timer.virtual import VirtualTimer

__all__ = ["Timer", "TimerHandle", "AsyncioTimer", "VirtualTimer"]
