"""基于 asyncio 事件循环的计时器实现。"""

import asyncio
import time

from autolauncher.timer.base import TimerCallback


class RepeatingHandle:
    """周期性计时器的句柄：每次触发后重新布防下一个 asyncio 句柄。"""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle:
            self._handle.cancel()
            self._handle = None

    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioTimer:
    """使用 loop.call_later 的真实计时器。"""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_ms: int, callback: TimerCallback) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(0, delay_ms) / 1000, callback)

    def call_every(self, interval_ms: int, callback: TimerCallback) -> RepeatingHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms 必须为正数")

        handle = RepeatingHandle()

        def tick() -> None:
            if handle.cancelled():
                return
            # 先布防下一次，再执行回调
            handle._handle = self.call_later(interval_ms, tick)
            callback()

        handle._handle = self.call_later(interval_ms, tick)
        return handle
