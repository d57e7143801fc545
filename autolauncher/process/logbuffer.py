"""进程输出的有界环形缓冲区。"""

from collections import deque
from typing import Callable

from autolauncher.utils.helpers import iso_from_ms

MAX_LOG_BUFFER_LINES = 1000


class LogBuffer:
    """
    按行保存进程输出，超过上限时最早的行被淘汰。

    输出按块到达，块边界不一定落在换行处，因此每个流保留一段未完成的行，
    直到读到换行或调用 flush()。
    """

    def __init__(self, max_lines: int = MAX_LOG_BUFFER_LINES, clock: Callable[[], int] | None = None):
        if max_lines < 1:
            raise ValueError("max_lines 必须至少为 1")
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._partial: dict[str, str] = {}
        self._clock = clock

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen

    def feed(self, stream: str, text: str) -> None:
        """追加一块输出。"""
        pending = self._partial.pop(stream, "") + text
        *complete, rest = pending.split("\n")
        for line in complete:
            self.append(stream, line)
        if rest:
            self._partial[stream] = rest

    def flush(self, stream: str | None = None) -> None:
        """把未完成的行写入缓冲区。"""
        streams = [stream] if stream else list(self._partial)
        for name in streams:
            rest = self._partial.pop(name, "")
            if rest:
                self.append(name, rest)

    def append(self, stream: str, line: str) -> None:
        line = line.rstrip("\r")
        if not line.strip():
            return
        if self._clock:
            line = f"[{iso_from_ms(self._clock())}] [{stream}] {line}"
        else:
            line = f"[{stream}] {line}"
        self._lines.append(line)

    def lines(self) -> list[str]:
        return list(self._lines)

    def tail(self, n: int | None = None) -> list[str]:
        """最后 n 行，n 为 None 时返回全部。"""
        if n is None:
            return list(self._lines)
        if n <= 0:
            return []
        return list(self._lines)[-n:]

    def __len__(self) -> int:
        return len(self._lines)
