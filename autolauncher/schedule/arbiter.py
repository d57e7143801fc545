"""并发仲裁器：决定一次触发是启动、排队还是跳过。"""

import itertools
import uuid
from collections import deque
from typing import Callable

from loguru import logger

from autolauncher.bus.events import (
    RunKillRequested,
    RunQueued,
    RunRequested,
    RunRetryScheduled,
    RunSkipped,
    TriggerError,
    TriggerFired,
)
from autolauncher.bus.queue import EventBus
from autolauncher.schedule.types import Admission, QueuedRun, Schedule, ScheduleEntry
from autolauncher.timer.base import Timer, TimerHandle

DEFAULT_GLOBAL_CONCURRENCY_LIMIT = 3


def _new_run_id() -> str:
    return str(uuid.uuid4())


class ConcurrencyArbiter:
    """
    对每次触发按固定顺序执行准入检查：

    1. 手动跳过标记（一次性，触发时消费）
    2. 全局并发上限（超过则排队）
    3. 调度级并发上限（超过则排队，与条目的重叠策略无关）
    4. 角色锁（被占用时按条目的重叠策略 skip / queue / kill-previous 处理）

    所有状态都封装在实例内部，且只在事件处理器中同步修改。
    """

    def __init__(
        self,
        bus: EventBus,
        timer: Timer,
        global_limit: int = DEFAULT_GLOBAL_CONCURRENCY_LIMIT,
        kill_previous_waits_for_exit: bool = True,
        run_id_factory: Callable[[], str] = _new_run_id,
    ):
        if global_limit < 1:
            raise ValueError("全局并发上限必须至少为 1")
        self.bus = bus
        self.timer = timer
        self.global_limit = global_limit
        self.kill_previous_waits_for_exit = kill_previous_waits_for_exit
        self._run_id_factory = run_id_factory

        self._locks: dict[str, str] = {}  # resource_id -> run_id
        self._queues: dict[str, deque[QueuedRun]] = {}
        self._replacements: dict[str, QueuedRun] = {}  # 等待旧运行退出的 kill-previous 替换运行
        self._runs: dict[str, Admission] = {}
        self._schedule_counts: dict[str, int] = {}
        self._schedules: dict[str, Schedule] = {}
        self._skipped: set[tuple[str, str]] = set()
        self._retry_handles: dict[tuple[str, str, int], TimerHandle] = {}
        self._seq = itertools.count(1)
        self._closed = False

        bus.subscribe(TriggerFired, self._on_trigger_event)

    # ========== 触发 ==========

    def _on_trigger_event(self, event: TriggerFired) -> None:
        self.on_trigger(event.schedule, event.entry)

    def on_trigger(self, schedule: Schedule, entry: ScheduleEntry) -> None:
        """对一次触发执行准入检查，恰好产生一个结果。"""
        if self._closed:
            logger.info(f"仲裁器：已关闭，跳过条目 {entry.id} 的触发")
            self._publish_skipped(schedule.id, entry, "unregistered")
            return
        try:
            self._schedules[schedule.id] = schedule
            key = (schedule.id, entry.id)
            if key in self._skipped:
                self._skipped.discard(key)
                logger.info(f"仲裁器：条目 {entry.id} 已被手动跳过")
                self._publish_skipped(schedule.id, entry, "manual-skip")
                return
            self._admit(schedule, entry, attempt=1)
        except Exception as e:
            logger.error(f"仲裁器：处理条目 {entry.id} 的触发时出错：{e}")
            self.bus.publish(TriggerError(schedule_id=schedule.id, entry_id=entry.id, error=str(e)))

    def _admit(self, schedule: Schedule, entry: ScheduleEntry, attempt: int) -> None:
        if self.active_count >= self.global_limit:
            logger.debug(f"仲裁器：已达到全局并发上限 ({self.global_limit})，条目 {entry.id} 排队")
            self._enqueue(schedule, entry, attempt, "global-limit")
            return

        if self._schedule_full(schedule):
            logger.debug(f"仲裁器：调度 {schedule.id} 已达到并发上限 ({schedule.concurrency_limit})，条目 {entry.id} 排队")
            self._enqueue(schedule, entry, attempt, "schedule-limit")
            return

        holder = self._locks.get(entry.resource_id)
        if holder is None:
            self._start(schedule, entry, attempt)
            return

        if entry.overlap_policy == "skip":
            logger.info(f"仲裁器：角色 {entry.resource_id} 忙碌，跳过条目 {entry.id}")
            self._publish_skipped(schedule.id, entry, "resource-busy")
        elif entry.overlap_policy == "queue":
            logger.info(f"仲裁器：角色 {entry.resource_id} 忙碌，条目 {entry.id} 排队")
            self._enqueue(schedule, entry, attempt, "resource-busy")
        elif entry.overlap_policy == "kill-previous":
            logger.info(f"仲裁器：角色 {entry.resource_id} 忙碌，终止上一次运行 {holder}")
            self._kill_previous(schedule, entry, holder, attempt)
        else:
            raise ValueError(f"未知的重叠策略：{entry.overlap_policy}")

    def _schedule_full(self, schedule: Schedule) -> bool:
        limit = schedule.concurrency_limit
        return bool(limit) and self.schedule_active_count(schedule.id) >= limit

    def _enqueue(self, schedule: Schedule, entry: ScheduleEntry, attempt: int, reason: str) -> None:
        queue = self._queues.setdefault(entry.resource_id, deque())
        queue.append(QueuedRun(
            schedule=schedule,
            entry=entry,
            enqueued_at_ms=self.timer.now_ms(),
            seq=next(self._seq),
            attempt=attempt,
            reason=reason,
        ))
        self.bus.publish(RunQueued(
            schedule_id=schedule.id,
            entry_id=entry.id,
            resource_id=entry.resource_id,
            reason=reason,
            queue_position=len(queue),
        ))

    def _kill_previous(self, schedule: Schedule, entry: ScheduleEntry, holder: str, attempt: int) -> None:
        self.bus.publish(RunKillRequested(run_id=holder, reason="overlap-policy"))

        if not self.kill_previous_waits_for_exit:
            # 不等待旧进程退出：锁立即转移给新运行
            self._start(schedule, entry, attempt)
            return

        previous = self._replacements.get(entry.resource_id)
        if previous:
            self._publish_skipped(previous.schedule.id, previous.entry, "superseded")

        self._replacements[entry.resource_id] = QueuedRun(
            schedule=schedule,
            entry=entry,
            enqueued_at_ms=self.timer.now_ms(),
            seq=next(self._seq),
            attempt=attempt,
            reason="awaiting-kill",
        )
        self.bus.publish(RunQueued(
            schedule_id=schedule.id,
            entry_id=entry.id,
            resource_id=entry.resource_id,
            reason="awaiting-kill",
            queue_position=0,
        ))

    def _start(self, schedule: Schedule, entry: ScheduleEntry, attempt: int) -> str:
        run_id = self._run_id_factory()
        self._locks[entry.resource_id] = run_id
        self._runs[run_id] = Admission(
            run_id=run_id,
            schedule_id=schedule.id,
            entry_id=entry.id,
            resource_id=entry.resource_id,
            attempt=attempt,
            admitted_at_ms=self.timer.now_ms(),
        )
        self._schedule_counts[schedule.id] = self._schedule_counts.get(schedule.id, 0) + 1

        logger.info(f"仲裁器：准入运行 {run_id}（条目 {entry.id}，角色 {entry.resource_id}，第 {attempt} 次尝试）")
        self.bus.publish(RunRequested(
            run_id=run_id,
            schedule_id=schedule.id,
            entry_id=entry.id,
            scenario_id=entry.scenario_id,
            resource_id=entry.resource_id,
            max_duration_ms=entry.max_duration_ms,
            attempt=attempt,
        ))
        return run_id

    def _publish_skipped(self, schedule_id: str, entry: ScheduleEntry, reason: str) -> None:
        self.bus.publish(RunSkipped(
            schedule_id=schedule_id,
            entry_id=entry.id,
            scenario_id=entry.scenario_id,
            resource_id=entry.resource_id,
            reason=reason,
        ))

    # ========== 完成与出队 ==========

    def on_run_completed(self, run_id: str, entry_id: str, status: str | None = None) -> None:
        """
        释放运行持有的角色锁和调度计数，然后尝试让排队的运行重新准入。

        宿主应在持久化 run:exit 之后调用。对未知或已完成的 run_id 不做任何事。
        """
        admission = self._runs.pop(run_id, None)
        if admission is None:
            logger.debug(f"仲裁器：忽略未知运行 {run_id} 的完成通知")
            return
        if admission.entry_id != entry_id:
            logger.warning(f"仲裁器：运行 {run_id} 属于条目 {admission.entry_id}，而不是 {entry_id}")

        if self._locks.get(admission.resource_id) == run_id:
            del self._locks[admission.resource_id]

        count = self._schedule_counts.get(admission.schedule_id, 0) - 1
        if count > 0:
            self._schedule_counts[admission.schedule_id] = count
        else:
            self._schedule_counts.pop(admission.schedule_id, None)

        logger.debug(f"仲裁器：运行 {run_id} 已完成，释放角色 {admission.resource_id}")

        if status == "error":
            self._maybe_retry(admission)

        self._drain()

    def _drain(self) -> None:
        """按入队顺序重新准入空闲角色的队首运行，直到没有可准入的运行。"""
        while not self._closed:
            candidate = self._next_admissible()
            if candidate is None:
                return
            queued, is_replacement = candidate
            if is_replacement:
                del self._replacements[queued.resource_id]
            else:
                queue = self._queues[queued.resource_id]
                queue.popleft()
                if not queue:
                    del self._queues[queued.resource_id]
            schedule = self._schedules.get(queued.schedule.id, queued.schedule)
            self._start(schedule, queued.entry, queued.attempt)

    def _next_admissible(self) -> tuple[QueuedRun, bool] | None:
        if self.active_count >= self.global_limit:
            return None

        candidates: list[tuple[QueuedRun, bool]] = []
        for resource_id, replacement in self._replacements.items():
            if resource_id not in self._locks:
                candidates.append((replacement, True))
        for resource_id, queue in self._queues.items():
            if queue and resource_id not in self._locks and resource_id not in self._replacements:
                candidates.append((queue[0], False))

        # 替换运行优先，其余按入队顺序
        candidates.sort(key=lambda c: (not c[1], c[0].seq))
        for queued, is_replacement in candidates:
            schedule = self._schedules.get(queued.schedule.id, queued.schedule)
            if not self._schedule_full(schedule):
                return queued, is_replacement
        return None

    # ========== 重试 ==========

    def _maybe_retry(self, admission: Admission) -> None:
        schedule = self._schedules.get(admission.schedule_id)
        entry = schedule.find_entry(admission.entry_id) if schedule else None
        if entry is None or entry.retry is None or admission.attempt > entry.retry.max:
            return

        attempt = admission.attempt + 1
        delay = entry.retry.backoff_ms
        key = (admission.schedule_id, admission.entry_id, attempt)
        logger.info(f"仲裁器：条目 {entry.id} 将在 {delay}ms 后进行第 {attempt} 次尝试")
        self._retry_handles[key] = self.timer.call_later(delay, lambda: self._on_retry(key))
        self.bus.publish(RunRetryScheduled(
            schedule_id=admission.schedule_id,
            entry_id=admission.entry_id,
            attempt=attempt,
            delay_ms=delay,
        ))

    def _on_retry(self, key: tuple[str, str, int]) -> None:
        self._retry_handles.pop(key, None)
        schedule_id, entry_id, attempt = key
        schedule = self._schedules.get(schedule_id)
        entry = schedule.find_entry(entry_id) if schedule else None
        if schedule is None or entry is None or not entry.enabled:
            logger.info(f"仲裁器：条目 {entry_id} 已不再注册，放弃重试")
            return
        try:
            self._admit(schedule, entry, attempt)
        except Exception as e:
            logger.error(f"仲裁器：重试条目 {entry_id} 时出错：{e}")
            self.bus.publish(TriggerError(schedule_id=schedule_id, entry_id=entry_id, error=str(e)))

    # ========== 重新注册 ==========

    def sync_schedules(self, schedules: list[Schedule]) -> None:
        """
        在调度重新注册后刷新排队运行的快照。

        条目已不再注册（或被禁用）的排队运行会被丢弃并报告为 skipped。
        活跃运行、锁和计数保持不变，它们对应的进程仍在运行。
        """
        self._closed = False
        self._schedules = {s.id: s for s in schedules if s.enabled}

        queued = sorted(
            [q for queue in self._queues.values() for q in queue],
            key=lambda q: q.seq,
        )
        self._queues.clear()
        for q in queued:
            if self._refresh(q):
                self._queues.setdefault(q.resource_id, deque()).append(q)

        replacements = list(self._replacements.values())
        self._replacements.clear()
        for q in replacements:
            if self._refresh(q):
                self._replacements[q.resource_id] = q

        self._drain()

    def _refresh(self, queued: QueuedRun) -> bool:
        schedule = self._schedules.get(queued.schedule.id)
        entry = schedule.find_entry(queued.entry_id) if schedule else None
        if entry is None or not entry.enabled:
            logger.info(f"仲裁器：条目 {queued.entry_id} 已不再注册，丢弃排队运行")
            self._publish_skipped(queued.schedule.id, queued.entry, "unregistered")
            return False
        queued.schedule = schedule
        queued.entry = entry
        return True

    # ========== 手动跳过 ==========

    def set_skipped(self, schedule_id: str, entry_id: str) -> None:
        """标记条目的下一次触发为跳过。重复设置等同于设置一次。"""
        self._skipped.add((schedule_id, entry_id))

    def clear_skipped(self, schedule_id: str, entry_id: str) -> None:
        self._skipped.discard((schedule_id, entry_id))

    def list_skipped(self) -> list[tuple[str, str]]:
        return sorted(self._skipped)

    # ========== 状态 ==========

    @property
    def active_count(self) -> int:
        """所有调度中的活跃运行总数。"""
        return len(self._runs)

    def schedule_active_count(self, schedule_id: str) -> int:
        return self._schedule_counts.get(schedule_id, 0)

    def get_resource_locks(self) -> dict[str, str]:
        return dict(self._locks)

    def get_queue_status(self) -> dict[str, int]:
        """每个角色的排队数量（包括等待旧运行退出的替换运行）。"""
        status = {resource_id: len(queue) for resource_id, queue in self._queues.items() if queue}
        for resource_id in self._replacements:
            status[resource_id] = status.get(resource_id, 0) + 1
        return status

    def get_admission(self, run_id: str) -> Admission | None:
        return self._runs.get(run_id)

    def close(self) -> None:
        """
        停止准入：取消待执行的重试，丢弃排队运行。

        活跃运行的完成通知仍会释放锁，但不再启动新运行。再次调用 sync_schedules 会重新开放准入。
        """
        self._closed = True
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        dropped = [q for queue in self._queues.values() for q in queue] + list(self._replacements.values())
        self._queues.clear()
        self._replacements.clear()
        for q in sorted(dropped, key=lambda q: q.seq):
            self._publish_skipped(q.schedule.id, q.entry, "unregistered")
