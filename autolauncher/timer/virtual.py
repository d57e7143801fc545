"""用于测试的虚拟时钟计时器。"""

import heapq
import itertools
from dataclasses import dataclass, field

from autolauncher.timer.base import TimerCallback


@dataclass(order=True)
class _Deadline:
    when_ms: int
    seq: int
    handle: "VirtualHandle" = field(compare=False)


class VirtualHandle:
    """虚拟计时器句柄。"""

    def __init__(self, callback: TimerCallback, interval_ms: int | None = None):
        self.callback = callback
        self.interval_ms = interval_ms
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualTimer:
    """
    手动推进的时钟。

    advance() 按截止时间顺序依次执行到期的回调，并在执行每个回调之前
    把 now_ms() 设为该回调的截止时间，因此回调内部看到的时间是精确的。
    同一截止时间的回调按布防顺序执行。
    """

    def __init__(self, start_ms: int = 0):
        self._now_ms = start_ms
        self._heap: list[_Deadline] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now_ms

    def call_later(self, delay_ms: int, callback: TimerCallback) -> VirtualHandle:
        handle = VirtualHandle(callback)
        self._push(self._now_ms + max(0, delay_ms), handle)
        return handle

    def call_every(self, interval_ms: int, callback: TimerCallback) -> VirtualHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms 必须为正数")
        handle = VirtualHandle(callback, interval_ms=interval_ms)
        self._push(self._now_ms + interval_ms, handle)
        return handle

    def _push(self, when_ms: int, handle: VirtualHandle) -> None:
        heapq.heappush(self._heap, _Deadline(when_ms, next(self._seq), handle))

    def advance(self, delta_ms: int) -> int:
        """将时钟推进 delta_ms 毫秒，返回执行的回调数量。"""
        return self.advance_to(self._now_ms + delta_ms)

    def advance_to(self, target_ms: int) -> int:
        """将时钟推进到 target_ms，依次执行期间到期的回调。"""
        fired = 0
        while self._heap and self._heap[0].when_ms <= target_ms:
            deadline = heapq.heappop(self._heap)
            handle = deadline.handle
            if handle.cancelled():
                continue
            self._now_ms = max(self._now_ms, deadline.when_ms)
            if handle.interval_ms:
                self._push(deadline.when_ms + handle.interval_ms, handle)
            handle.callback()
            fired += 1
        self._now_ms = max(self._now_ms, target_ms)
        return fired

    def next_deadline_ms(self) -> int | None:
        """最早的未取消截止时间。"""
        live = [d.when_ms for d in self._heap if not d.handle.cancelled()]
        return min(live) if live else None

    @property
    def pending(self) -> int:
        """尚未执行且未取消的计时器数量。"""
        return sum(1 for d in self._heap if not d.handle.cancelled())
