import asyncio

import pytest

from autolauncher.bus import EntryError, Event, EventBus, RunKillRequested, TriggerError


# 测试在处理器内部发布的事件在当前处理器返回后才投递
def test_run_to_completion_ordering() -> None:
    bus = EventBus()
    log: list[str] = []

    def first(event: TriggerError) -> None:
        log.append("first:start")
        bus.publish(EntryError(schedule_id="s", entry_id="e", error="nested"))
        log.append("first:end")

    bus.subscribe(TriggerError, first)
    bus.subscribe(TriggerError, lambda e: log.append("second"))
    bus.subscribe(EntryError, lambda e: log.append("entry-error"))

    bus.publish(TriggerError(schedule_id="s", entry_id="e", error="boom"))

    assert log == ["first:start", "first:end", "second", "entry-error"]
    assert bus.pending_size == 0


# 测试订阅者的异常不会阻止其他订阅者
def test_subscriber_exception_is_isolated() -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken(event: Event) -> None:
        raise RuntimeError("订阅者出错")

    bus.subscribe(RunKillRequested, broken)
    bus.subscribe(RunKillRequested, lambda e: seen.append(e.run_id))
    bus.publish(RunKillRequested(run_id="r1", reason="test"))

    assert seen == ["r1"]


# 测试通配订阅者接收所有事件
def test_subscribe_all() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe_all(lambda e: seen.append(e.name))

    bus.publish(RunKillRequested(run_id="r1", reason="test"))
    bus.publish(EntryError(schedule_id="s", entry_id="e", error="x"))

    assert seen == ["run:kill-requested", "entry:error"]


# 测试取消订阅
def test_unsubscribe() -> None:
    bus = EventBus()
    seen: list[str] = []
    callback = lambda e: seen.append(e.run_id)  # noqa: E731
    bus.subscribe(RunKillRequested, callback)
    bus.unsubscribe(RunKillRequested, callback)

    bus.publish(RunKillRequested(run_id="r1", reason="test"))
    assert seen == []


# 测试未知事件类型和非事件对象被拒绝
def test_rejects_unknown_types() -> None:
    bus = EventBus()

    class Custom(Event):
        pass

    with pytest.raises(ValueError):
        bus.subscribe(Custom, lambda e: None)
    with pytest.raises(TypeError):
        bus.publish("not an event")


# 测试协程订阅者作为任务调度
async def test_async_subscriber_scheduled_as_task() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def handler(event: RunKillRequested) -> None:
        await asyncio.sleep(0)
        seen.append(event.run_id)

    bus.subscribe(RunKillRequested, handler)
    bus.publish(RunKillRequested(run_id="r1", reason="test"))

    assert seen == []
    assert bus.task_count == 1
    await bus.join()
    assert seen == ["r1"]
    assert bus.task_count == 0
