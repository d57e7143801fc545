import sys

import pytest

from fakes import FakeProcess, FakeSpawner, MemoryLedger, settle

from autolauncher.bus import RunExit, RunQueued, RunSkipped, RunStarted, RunTimeout
from autolauncher.config.schema import Config
from autolauncher.launcher import Launcher
from autolauncher.timer import VirtualTimer

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="依赖 POSIX 信号")


def _config(tmp_path) -> Config:
    return Config.model_validate({
        "launcher": {"scratch_dir": str(tmp_path)},
        "ledger": {"dir": str(tmp_path / "history")},
        "scenarios": [{"id": "1", "name": "Farming"}],
        "characters": [{"id": "char-1", "name": "Alice", "credential_id": "cred-1"}],
        "credentials": [{"id": "cred-1", "username": "alice", "password": "pw"}],
        "schedules": [{
            "id": "s1",
            "name": "Every minute",
            "entries": [{
                "id": "e1",
                "scenario_id": "1",
                "character_id": "char-1",
                "cadence": {"type": "every", "unit": "minutes", "n": 1},
                "max_duration_ms": 5_000,
                "overlap_policy": "skip",
            }],
        }],
    })


def _setup(tmp_path, *processes: FakeProcess, ledger: MemoryLedger | None = None):
    timer = VirtualTimer()
    ledger = ledger or MemoryLedger()
    launcher = Launcher(_config(tmp_path), timer=timer, ledger=ledger, spawner=FakeSpawner(*processes))
    events: list = []
    launcher.bus.subscribe_all(events.append)
    return launcher, timer, ledger, events


def _of(events: list, event_type: type) -> list:
    return [e for e in events if isinstance(e, event_type)]


# 测试每分钟一次、skip 策略、5 秒上限的完整流程
async def test_every_minute_skip_and_timeout(tmp_path) -> None:
    process = FakeProcess(exit_on_interrupt=True)
    launcher, timer, ledger, events = _setup(tmp_path, process)

    await launcher.start()
    assert ledger.prunes == [14]

    timer.advance(60_000)
    await settle()
    [started] = _of(events, RunStarted)
    assert started.started_at_ms == 60_000

    # 进程仍在运行时到达的第二次触发被跳过而不是排队
    timer.advance(2_000)
    schedule = launcher.config.to_schedules()[0]
    launcher.arbiter.on_trigger(schedule, schedule.entries[0])
    [skipped] = _of(events, RunSkipped)
    assert skipped.reason == "resource-busy"
    assert _of(events, RunQueued) == []

    timer.advance(3_000)
    [timeout] = _of(events, RunTimeout)
    assert timeout.stage == "graceful"
    assert timer.now_ms() == 65_000

    await launcher.supervisor.wait_idle()
    await launcher.bus.join()

    [exit_event] = _of(events, RunExit)
    assert exit_event.record.status == "timeout"
    assert ledger.records == [exit_event.record]
    assert launcher.arbiter.get_resource_locks() == {}

    await launcher.stop()


# 测试账本写入失败时仍然释放角色锁
async def test_ledger_failure_still_releases_lock(tmp_path) -> None:
    process = FakeProcess()
    launcher, timer, ledger, events = _setup(tmp_path, process, ledger=MemoryLedger(fail=True))

    await launcher.start()
    timer.advance(60_000)
    await settle()
    assert launcher.arbiter.active_count == 1

    process.exit(0)
    await launcher.supervisor.wait_idle()
    await launcher.bus.join()

    assert _of(events, RunExit)[0].record.status == "success"
    assert launcher.arbiter.get_resource_locks() == {}
    assert launcher.arbiter.active_count == 0

    await launcher.stop()


# 测试手动跳过作为 skipped 记录写入账本
async def test_manual_skip_is_recorded(tmp_path) -> None:
    launcher, timer, ledger, events = _setup(tmp_path)

    await launcher.start()
    launcher.skip_next("s1", "e1")
    timer.advance(60_000)

    [record] = ledger.records
    assert record.status == "skipped"
    assert record.run_id.startswith("skip-s1-e1-")
    assert record.duration_ms == 0
    assert _of(events, RunStarted) == []

    await launcher.stop()


# 测试停止启动器会终止活跃运行并记录
async def test_stop_terminates_active_runs(tmp_path) -> None:
    process = FakeProcess(exit_on_interrupt=True)
    launcher, timer, ledger, _ = _setup(tmp_path, process)

    await launcher.start()
    timer.advance(60_000)
    await settle()
    status = launcher.status()
    assert status["running"] is True
    assert status["jobs"] == 1
    assert len(status["active_runs"]) == 1

    await launcher.stop()

    assert [r.status for r in ledger.records] == ["killed"]
    assert launcher.status()["running"] is False
    assert timer.pending == 0


# 测试重新注册调度替换作业
async def test_register_schedules_replaces_jobs(tmp_path) -> None:
    launcher, timer, _, events = _setup(tmp_path)

    await launcher.start()
    assert launcher.register_schedules([]) == 0

    timer.advance(120_000)
    assert _of(events, RunStarted) == []
    assert launcher.get_upcoming_runs() == []

    await launcher.stop()
