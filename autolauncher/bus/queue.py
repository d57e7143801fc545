"""在触发引擎、仲裁器和进程监督器之间传递事件的总线。"""

import asyncio
import inspect
from collections import deque
from typing import Any, Callable

from loguru import logger

from autolauncher.bus.events import EVENT_TYPES, Event

Subscriber = Callable[[Any], Any]


class EventBus:
    """
    按事件类型分发的进程内事件总线。

    事件按发布顺序逐个投递，每个事件的全部订阅者执行完毕后才投递下一个。
    在订阅者内部发布的事件先进入待投递队列，当前处理器返回后再投递，
    因此每个处理器都是"运行到完成"的，不会被嵌套调用打断。

    订阅者若返回协程，则作为任务在当前事件循环上调度。
    """

    def __init__(self):
        self._subscribers: dict[type[Event], list[Subscriber]] = {}
        self._wildcard: list[Subscriber] = []
        self._pending: deque[Event] = deque()
        self._dispatching = False
        self._tasks: set[asyncio.Future] = set()

    def subscribe(self, event_type: type[Event], callback: Subscriber) -> None:
        """订阅特定类型的事件。"""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"未知的事件类型：{event_type!r}")
        self._subscribers.setdefault(event_type, []).append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        """订阅所有事件（例如用于控制台输出）。"""
        self._wildcard.append(callback)

    def unsubscribe(self, event_type: type[Event], callback: Subscriber) -> None:
        subscribers = self._subscribers.get(event_type, [])
        if callback in subscribers:
            subscribers.remove(callback)

    def publish(self, event: Event) -> None:
        """发布事件。在分发过程中调用时，事件排在当前队列末尾。"""
        if not isinstance(event, EVENT_TYPES):
            raise TypeError(f"不是总线事件：{event!r}")

        self._pending.append(event)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._dispatching = False

    def _deliver(self, event: Event) -> None:
        subscribers = [*self._subscribers.get(type(event), []), *self._wildcard]
        for callback in subscribers:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(event, result)
            except Exception as e:
                logger.error(f"分发 {event.name} 时出错：{e}")

    def _schedule(self, event: Event, awaitable: Any) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError as e:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.error(f"无法调度 {event.name} 的异步订阅者：{e}")
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"异步订阅者出错：{exc}")

    async def join(self) -> None:
        """等待所有异步订阅者任务完成。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_size(self) -> int:
        """待投递的事件数量。"""
        return len(self._pending)

    @property
    def task_count(self) -> int:
        """尚未完成的异步订阅者任务数量。"""
        return len(self._tasks)
