"""计时器原语的协议定义。"""

from typing import Callable, Protocol, runtime_checkable

TimerCallback = Callable[[], None]


class TimerHandle(Protocol):
    """已布防计时器的句柄。asyncio.TimerHandle 满足此协议。"""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


@runtime_checkable
class Timer(Protocol):
    """
    "D 毫秒后执行一次回调" / "每隔 N 毫秒执行回调" 的抽象。

    回调总是在事件循环线程上同步执行，彼此之间不会重叠。
    测试中用 VirtualTimer 替换 AsyncioTimer 即可得到可控的时钟。
    """

    def now_ms(self) -> int:
        """当前墙上时间（毫秒时间戳）。"""
        ...

    def call_later(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        """在 delay_ms 毫秒后执行一次 callback。"""
        ...

    def call_every(self, interval_ms: int, callback: TimerCallback) -> TimerHandle:
        """每隔 interval_ms 毫秒执行一次 callback，直到句柄被取消。"""
        ...
