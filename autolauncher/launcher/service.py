"""启动器服务：组装触发引擎、仲裁器、进程监督器和运行账本。"""

import asyncio
from typing import Any, Protocol

from loguru import logger

from autolauncher.bus.events import EntryError, RunExit, RunSkipped, RunStarted, RunTimeout, TriggerError
from autolauncher.bus.queue import EventBus
from autolauncher.config.schema import Config
from autolauncher.credentials.vault import ConfigCredentialVault
from autolauncher.ledger.jsonl import JsonlRunLedger
from autolauncher.process.supervisor import ProcessSupervisor, spawn_subprocess
from autolauncher.process.types import RunRecord, SecretResolver, Spawner
from autolauncher.schedule.arbiter import ConcurrencyArbiter
from autolauncher.schedule.engine import TriggerEngine
from autolauncher.schedule.types import Schedule, UpcomingRun
from autolauncher.timer.asyncio_timer import AsyncioTimer
from autolauncher.timer.base import Timer, TimerHandle
from autolauncher.utils.helpers import iso_from_ms

# 账本清理间隔：每天一次
PRUNE_INTERVAL_MS = 24 * 60 * 60 * 1000


class RunLedger(Protocol):
    def append(self, record: RunRecord) -> None: ...

    def prune(self, retention_days: int, now_ms: int | None = None) -> int: ...


class Launcher:
    """
    宿主应用。

    订阅 run:exit：先把记录写入账本，再通知仲裁器释放角色锁（即使写入失败也会释放）。
    手动跳过会作为 skipped 记录写入账本。账本每天清理一次。
    """

    def __init__(
        self,
        config: Config,
        timer: Timer | None = None,
        bus: EventBus | None = None,
        ledger: RunLedger | None = None,
        secrets: SecretResolver | None = None,
        spawner: Spawner = spawn_subprocess,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.timer = timer or AsyncioTimer()
        self.ledger = ledger or JsonlRunLedger(config.ledger.path)

        self.engine = TriggerEngine(self.bus, self.timer)
        self.arbiter = ConcurrencyArbiter(
            self.bus,
            self.timer,
            global_limit=config.scheduler.global_concurrency_limit,
            kill_previous_waits_for_exit=config.scheduler.kill_previous_waits_for_exit,
        )
        self.supervisor = ProcessSupervisor(
            self.bus,
            self.timer,
            catalog=config.catalog(),
            secrets=secrets or ConfigCredentialVault(config),
            settings=config.launch_settings(),
            spawner=spawner,
            grace_window_ms=config.scheduler.grace_window_ms,
            max_log_lines=config.scheduler.log_buffer_lines,
        )

        self._prune_handle: TimerHandle | None = None
        self._running = False

        self.bus.subscribe(RunExit, self._on_run_exit)
        self.bus.subscribe(RunSkipped, self._on_run_skipped)
        self.bus.subscribe(RunStarted, self._on_run_started)
        self.bus.subscribe(RunTimeout, self._on_run_timeout)
        self.bus.subscribe(TriggerError, self._on_error)
        self.bus.subscribe(EntryError, self._on_error)

    # ========== 生命周期 ==========

    async def start(self) -> None:
        """注册调度，清理一次账本，然后布防每日清理。"""
        self._running = True
        self.register_schedules()
        self.prune_ledger()
        self._prune_handle = self.timer.call_every(PRUNE_INTERVAL_MS, self.prune_ledger)
        logger.info("启动器已启动")

    async def stop(self) -> None:
        """停止触发，终止所有活跃运行并等待它们被记录。"""
        self._running = False
        if self._prune_handle:
            self._prune_handle.cancel()
            self._prune_handle = None
        self.engine.clear_all_jobs()
        self.arbiter.close()

        stopping = self.supervisor.stop_all()
        if stopping:
            logger.info(f"启动器：正在停止 {stopping} 个活跃运行")
        await self.supervisor.wait_idle()
        await self.bus.join()
        logger.info("启动器已停止")

    def register_schedules(self, schedules: list[Schedule] | None = None) -> int:
        """注册（或重新注册）调度。未提供时使用配置中的调度。"""
        if schedules is None:
            schedules = self.config.to_schedules()
        armed = self.engine.register_schedules(schedules)
        self.arbiter.sync_schedules(schedules)
        return armed

    def prune_ledger(self) -> None:
        try:
            self.ledger.prune(self.config.ledger.retention_days, self.timer.now_ms())
        except OSError as e:
            logger.error(f"启动器：清理运行历史失败：{e}")

    # ========== 事件处理 ==========

    async def _on_run_exit(self, event: RunExit) -> None:
        record = event.record
        try:
            await asyncio.to_thread(self.ledger.append, record)
        except Exception as e:
            logger.error(f"启动器：无法记录运行 {record.run_id}：{e}")
        finally:
            self.arbiter.on_run_completed(record.run_id, record.entry_id, record.status)

    def _on_run_skipped(self, event: RunSkipped) -> None:
        logger.info(f"条目 {event.entry_id} 已跳过（{event.reason}）")
        if event.reason != "manual-skip":
            return

        now = self.timer.now_ms()
        record = RunRecord(
            ts=iso_from_ms(now),
            run_id=f"skip-{event.schedule_id}-{event.entry_id}-{now}",
            entry_id=event.entry_id,
            schedule_id=event.schedule_id,
            scenario_id=event.scenario_id,
            resource_id=event.resource_id,
            status="skipped",
            duration_ms=0,
        )
        try:
            self.ledger.append(record)
        except OSError as e:
            logger.error(f"启动器：无法记录跳过的条目 {event.entry_id}：{e}")

    def _on_run_started(self, event: RunStarted) -> None:
        logger.info(f"运行 {event.run_id} 已启动：{event.scenario} @ {event.resource}（pid {event.pid}）")

    def _on_run_timeout(self, event: RunTimeout) -> None:
        logger.warning(f"运行 {event.run_id} 超时（{event.stage}）")

    def _on_error(self, event: TriggerError | EntryError) -> None:
        logger.error(f"条目 {event.entry_id}（调度 {event.schedule_id}）：{event.error}")

    # ========== 控制 ==========

    def skip_next(self, schedule_id: str, entry_id: str) -> None:
        """跳过条目的下一次触发。"""
        self.arbiter.set_skipped(schedule_id, entry_id)

    def stop_run(self, run_id: str) -> bool:
        return self.supervisor.stop(run_id)

    def get_upcoming_runs(self, limit: int = 10) -> list[UpcomingRun]:
        return self.engine.get_upcoming_runs(limit)

    def status(self) -> dict[str, Any]:
        """获取启动器状态。"""
        return {
            "running": self._running,
            **self.engine.status(),
            "active_runs": [r.to_dict() for r in self.supervisor.get_active_runs()],
            "resource_locks": self.arbiter.get_resource_locks(),
            "queues": self.arbiter.get_queue_status(),
            "skipped": [list(k) for k in self.arbiter.list_skipped()],
        }
