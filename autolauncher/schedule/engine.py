"""触发引擎：为每个启用的条目布防计时器，到点时发布触发事件。"""

from loguru import logger

from autolauncher.bus.events import EntryError, TriggerError, TriggerFired
from autolauncher.bus.queue import EventBus
from autolauncher.errors import ConfigError
from autolauncher.schedule.cadence import compute_first_run, compute_next_run, iter_runs
from autolauncher.schedule.types import Job, Schedule, ScheduleEntry, UpcomingRun
from autolauncher.timer.base import Timer

# 即将运行列表的默认前瞻窗口：48 小时
DEFAULT_HORIZON_MS = 48 * 60 * 60 * 1000


class TriggerEngine:
    """
    计算每个条目的下一次触发时间并布防计时器。

    引擎只负责"何时"：到点后发布 TriggerFired，是否真正执行由仲裁器决定。
    周期性节奏在发布触发事件之前先布防下一次，处理器再慢也不会推迟下一次唤醒。
    """

    def __init__(self, bus: EventBus, timer: Timer):
        self.bus = bus
        self.timer = timer
        self._jobs: dict[tuple[str, str], Job] = {}  # (schedule_id, entry_id) -> Job

    # ========== 注册 ==========

    def register_schedules(self, schedules: list[Schedule]) -> int:
        """清除所有现有作业，然后注册所有启用的调度。返回已布防的条目数。"""
        self.clear_all_jobs()

        for schedule in schedules:
            if not schedule.enabled:
                continue
            for entry in schedule.entries:
                if entry.enabled:
                    self._register_entry(schedule, entry)

        logger.info(f"触发引擎：已注册 {len(self._jobs)} 个作业")
        return len(self._jobs)

    def _register_entry(self, schedule: Schedule, entry: ScheduleEntry) -> None:
        now = self.timer.now_ms()
        try:
            if (schedule.id, entry.id) in self._jobs:
                raise ConfigError(f"调度 {schedule.id} 中的条目 ID 重复：{entry.id}", entry.id)
            if entry.max_duration_ms <= 0:
                raise ConfigError(f"maxDurationMs 必须为正数：{entry.max_duration_ms}", entry.id)
            first = compute_first_run(entry.cadence, now)
        except ConfigError as e:
            logger.warning(f"触发引擎：无法注册条目 {entry.id}：{e}")
            self.bus.publish(EntryError(schedule_id=schedule.id, entry_id=entry.id, error=str(e)))
            return

        if first is None:
            logger.warning(f"触发引擎：一次性条目 {entry.id} 的时间已过，跳过")
            self.bus.publish(EntryError(
                schedule_id=schedule.id,
                entry_id=entry.id,
                error="一次性调度的时间已过",
            ))
            return

        job = Job(
            entry_id=entry.id,
            schedule_id=schedule.id,
            cadence=entry.cadence,
            schedule=schedule,
            entry=entry,
            registered_at_ms=now,
        )
        self._jobs[(schedule.id, entry.id)] = job
        self._arm(job, first)
        logger.debug(f"触发引擎：条目 {entry.id}（{entry.cadence.describe()}）下次运行于 {first}")

    def _arm(self, job: Job, when_ms: int) -> None:
        job.next_run_at_ms = when_ms
        delay = max(0, when_ms - self.timer.now_ms())
        job.handle = self.timer.call_later(delay, lambda: self._on_fire(job))

    def _on_fire(self, job: Job) -> None:
        """处理计时器触发：先重新布防，再发布触发事件。"""
        if self._jobs.get((job.schedule_id, job.entry_id)) is not job:
            return

        now = self.timer.now_ms()
        scheduled = job.next_run_at_ms if job.next_run_at_ms is not None else now
        job.last_run_at_ms = now

        try:
            next_run = compute_next_run(job.cadence, scheduled, now)
        except ConfigError as e:
            logger.error(f"触发引擎：无法计算条目 {job.entry_id} 的下次运行：{e}")
            next_run = None

        if next_run is None:
            job.handle = None
            job.next_run_at_ms = None
            if not job.cadence.recurring:
                # 一次性作业触发后解除布防
                self._jobs.pop((job.schedule_id, job.entry_id), None)
        else:
            self._arm(job, next_run)

        logger.debug(f"触发引擎：条目 {job.entry_id} 已触发")
        try:
            self.bus.publish(TriggerFired(schedule=job.schedule, entry=job.entry, fired_at_ms=now))
        except Exception as e:
            logger.error(f"触发引擎：发布条目 {job.entry_id} 的触发事件失败：{e}")
            self.bus.publish(TriggerError(
                schedule_id=job.schedule_id,
                entry_id=job.entry_id,
                error=str(e),
            ))

    def clear_all_jobs(self) -> None:
        """取消所有计时器并丢弃所有作业。"""
        for job in self._jobs.values():
            if job.handle:
                job.handle.cancel()
                job.handle = None
        self._jobs.clear()

    # ========== 公共 API ==========

    def get_job(self, schedule_id: str, entry_id: str) -> Job | None:
        return self._jobs.get((schedule_id, entry_id))

    def list_jobs(self) -> list[Job]:
        """列出所有作业，按下次运行时间排序。"""
        return sorted(self._jobs.values(), key=lambda j: j.next_run_at_ms or float("inf"))

    def get_upcoming_runs(self, limit: int = 10, horizon_ms: int = DEFAULT_HORIZON_MS) -> list[UpcomingRun]:
        """列出前瞻窗口内的所有未来触发，按时间升序。"""
        until = self.timer.now_ms() + horizon_ms
        upcoming: list[UpcomingRun] = []

        for job in self._jobs.values():
            if job.next_run_at_ms is None:
                continue
            try:
                for when in iter_runs(job.cadence, job.next_run_at_ms, until):
                    upcoming.append(UpcomingRun(
                        entry_id=job.entry_id,
                        schedule_id=job.schedule_id,
                        scenario_id=job.entry.scenario_id,
                        resource_id=job.entry.resource_id,
                        next_run_at_ms=when,
                        cadence_label=job.cadence.describe(),
                    ))
            except ConfigError as e:
                logger.warning(f"触发引擎：无法列出条目 {job.entry_id} 的未来运行：{e}")

        upcoming.sort(key=lambda r: r.next_run_at_ms)
        return upcoming[:limit]

    def _get_next_wake_ms(self) -> int | None:
        times = [j.next_run_at_ms for j in self._jobs.values() if j.next_run_at_ms]
        return min(times) if times else None

    def status(self) -> dict:
        """获取引擎状态。"""
        return {
            "jobs": len(self._jobs),
            "next_wake_at_ms": self._get_next_wake_ms(),
        }
