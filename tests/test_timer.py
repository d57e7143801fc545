import asyncio

from autolauncher.timer import AsyncioTimer, Timer, VirtualTimer


# 测试虚拟计时器按截止时间顺序执行回调
def test_virtual_timer_fires_in_deadline_order() -> None:
    timer = VirtualTimer()
    fired: list[tuple[str, int]] = []
    timer.call_later(300, lambda: fired.append(("c", timer.now_ms())))
    timer.call_later(100, lambda: fired.append(("a", timer.now_ms())))
    timer.call_later(100, lambda: fired.append(("b", timer.now_ms())))

    assert timer.advance(250) == 2
    assert fired == [("a", 100), ("b", 100)]
    assert timer.now_ms() == 250

    timer.advance(50)
    assert fired[-1] == ("c", 300)


# 测试取消的句柄不会执行
def test_virtual_timer_cancel() -> None:
    timer = VirtualTimer()
    fired: list[int] = []
    handle = timer.call_later(10, lambda: fired.append(1))
    handle.cancel()

    assert handle.cancelled()
    assert timer.pending == 0
    assert timer.advance(100) == 0
    assert fired == []


# 测试周期性计时器在推进期间多次触发
def test_virtual_timer_call_every() -> None:
    timer = VirtualTimer(start_ms=1000)
    seen: list[int] = []
    handle = timer.call_every(100, lambda: seen.append(timer.now_ms()))

    timer.advance(350)
    assert seen == [1100, 1200, 1300]
    assert timer.next_deadline_ms() == 1400

    handle.cancel()
    timer.advance(1000)
    assert len(seen) == 3


# 测试回调内部布防的计时器在同一次推进中执行
def test_virtual_timer_nested_arming() -> None:
    timer = VirtualTimer()
    seen: list[int] = []

    def first() -> None:
        seen.append(timer.now_ms())
        timer.call_later(50, lambda: seen.append(timer.now_ms()))

    timer.call_later(100, first)
    timer.advance(200)
    assert seen == [100, 150]


# 测试两种计时器都满足 Timer 协议
def test_timers_satisfy_protocol() -> None:
    assert isinstance(VirtualTimer(), Timer)
    assert isinstance(AsyncioTimer(), Timer)


# 测试 asyncio 计时器的单次和周期性回调
async def test_asyncio_timer_runs_callbacks() -> None:
    timer = AsyncioTimer()
    once = asyncio.Event()
    ticks: list[int] = []

    timer.call_later(10, once.set)
    handle = timer.call_every(10, lambda: ticks.append(1))

    await asyncio.wait_for(once.wait(), timeout=2)
    while len(ticks) < 2:
        await asyncio.sleep(0.01)
    handle.cancel()
    count = len(ticks)
    await asyncio.sleep(0.05)

    assert handle.cancelled()
    assert len(ticks) == count
