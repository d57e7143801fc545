"""进程监督器：启动场景进程、捕获输出并执行两阶段超时终止。"""

import asyncio
import json
import os
import signal
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from autolauncher.bus.events import RunExit, RunKillRequested, RunOutput, RunRequested, RunStarted, RunTimeout
from autolauncher.bus.queue import EventBus
from autolauncher.errors import SpawnError
from autolauncher.process.logbuffer import MAX_LOG_BUFFER_LINES, LogBuffer
from autolauncher.process.types import (
    ActiveRunInfo,
    Catalog,
    ProcessHandle,
    Resource,
    RunRecord,
    RunState,
    RunStatus,
    Scenario,
    SecretResolver,
    Spawner,
)
from autolauncher.timer.base import Timer, TimerHandle
from autolauncher.utils.helpers import iso_from_ms

# 优雅信号与强制终止之间的宽限窗口
GRACE_WINDOW_MS = 10_000

READ_CHUNK_SIZE = 4096

# 进程退出后等待剩余输出的时间（秒）。继承了管道的孙进程可能让管道一直不关闭
OUTPUT_DRAIN_TIMEOUT_S = 2.0

IS_WINDOWS = sys.platform == "win32"


async def spawn_subprocess(
    command: str,
    args: list[str],
    cwd: str | None,
    env: dict[str, str],
) -> asyncio.subprocess.Process:
    """默认的进程执行原语。"""
    return await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )


@dataclass
class LaunchSettings:
    """场景未声明时使用的默认启动参数。"""
    command: str = "java"
    args: tuple[str, ...] = ("-jar", "hafen.jar", "-bots", "{bot_config}")
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    scratch_dir: str | None = None
    require_credentials: bool = True


@dataclass
class ActiveRun:
    """监督器内部的单次运行状态。"""
    run_id: str
    entry_id: str
    schedule_id: str
    scenario_id: str
    resource_id: str
    max_duration_ms: int
    started_at_ms: int
    log: LogBuffer
    state: RunState = RunState.STARTING
    process: ProcessHandle | None = None
    soft_timer: TimerHandle | None = None
    hard_timer: TimerHandle | None = None
    scratch_files: list[Path] = field(default_factory=list)
    stop_requested: bool = False
    timed_out: bool = False


def classify_exit(
    exit_code: int | None,
    signal_name: str | None,
    duration_ms: int,
    max_duration_ms: int,
    error: str | None = None,
) -> RunStatus:
    """把进程退出结果归类为终态。"""
    if error is not None:
        return "error"
    if signal_name:
        return "timeout" if duration_ms >= max_duration_ms else "killed"
    if exit_code != 0:
        return "error"
    return "success"


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


def _render(arg: str, values: dict[str, str]) -> str:
    for key, value in values.items():
        arg = arg.replace("{" + key + "}", value)
    return arg


class ProcessSupervisor:
    """
    执行已准入的运行。

    每次运行：解析场景和角色，即时生成凭据配置文件，启动进程，逐行捕获
    stdout/stderr 到有界缓冲区，在 max_duration_ms 时发送优雅信号，
    宽限窗口后强制终止，最后发布 run:exit 并清理临时文件。
    手动 stop() 与超时走同一条"先优雅后强制"的路径。
    """

    def __init__(
        self,
        bus: EventBus,
        timer: Timer,
        catalog: Catalog,
        secrets: SecretResolver | None = None,
        settings: LaunchSettings | None = None,
        spawner: Spawner = spawn_subprocess,
        grace_window_ms: int = GRACE_WINDOW_MS,
        max_log_lines: int = MAX_LOG_BUFFER_LINES,
        output_drain_timeout_s: float = OUTPUT_DRAIN_TIMEOUT_S,
    ):
        self.bus = bus
        self.timer = timer
        self.catalog = catalog
        self.secrets = secrets
        self.settings = settings or LaunchSettings()
        self.spawner = spawner
        self.grace_window_ms = grace_window_ms
        self.max_log_lines = max_log_lines
        self.output_drain_timeout_s = output_drain_timeout_s
        self._runs: dict[str, ActiveRun] = {}
        self._tasks: set[asyncio.Task] = set()

        bus.subscribe(RunRequested, self._on_run_requested)
        bus.subscribe(RunKillRequested, self._on_kill_requested)

    # ========== 总线处理器 ==========

    def _on_run_requested(self, event: RunRequested) -> None:
        run = self._register(
            event.run_id,
            event.entry_id,
            event.scenario_id,
            event.resource_id,
            event.max_duration_ms,
            event.schedule_id,
        )
        self._track(asyncio.ensure_future(self._launch(run)))

    def _on_kill_requested(self, event: RunKillRequested) -> None:
        self.stop(event.run_id)

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ========== 启动 ==========

    async def start(
        self,
        run_id: str,
        entry_id: str,
        scenario_id: str,
        resource_id: str,
        max_duration_ms: int,
        schedule_id: str = "",
    ) -> str:
        """启动一次运行；进程创建（或失败）后返回，监督在后台继续。"""
        run = self._register(run_id, entry_id, scenario_id, resource_id, max_duration_ms, schedule_id)
        await self._launch(run)
        return run_id

    def _register(
        self,
        run_id: str,
        entry_id: str,
        scenario_id: str,
        resource_id: str,
        max_duration_ms: int,
        schedule_id: str,
    ) -> ActiveRun:
        if run_id in self._runs:
            raise ValueError(f"运行 {run_id} 已存在")
        run = ActiveRun(
            run_id=run_id,
            entry_id=entry_id,
            schedule_id=schedule_id,
            scenario_id=scenario_id,
            resource_id=resource_id,
            max_duration_ms=max_duration_ms,
            started_at_ms=self.timer.now_ms(),
            log=LogBuffer(self.max_log_lines, clock=self.timer.now_ms),
        )
        self._runs[run_id] = run
        return run

    async def _launch(self, run: ActiveRun) -> None:
        try:
            scenario, resource = self._resolve(run)
            args, env = await self._prepare(run, scenario, resource)
            command = scenario.command or self.settings.command
            cwd = scenario.cwd or self.settings.cwd
            logger.info(f"监督器：正在启动运行 {run.run_id}：{command} {' '.join(args)}")
            process = await self.spawner(command, args, cwd, env)
        except Exception as e:
            # 启动前的任何失败（目录、凭据、执行原语）都作为 error 结束运行
            logger.error(f"监督器：无法启动运行 {run.run_id}：{e}")
            self._finish(run, exit_code=None, signal_name=None, error=str(e))
            return

        run.process = process
        run.started_at_ms = self.timer.now_ms()
        run.state = RunState.RUNNING
        run.soft_timer = self.timer.call_later(run.max_duration_ms, lambda: self._on_soft_timeout(run))

        self.bus.publish(RunStarted(
            run_id=run.run_id,
            schedule_id=run.schedule_id,
            entry_id=run.entry_id,
            pid=process.pid,
            started_at_ms=run.started_at_ms,
            scenario=scenario.name,
            resource=resource.name,
        ))

        if run.stop_requested:
            self._begin_stop(run)

        self._track(asyncio.ensure_future(self._supervise(run)))

    def _resolve(self, run: ActiveRun) -> tuple[Scenario, Resource]:
        scenario = self.catalog.get_scenario(run.scenario_id)
        if scenario is None:
            raise SpawnError(f"未找到场景：{run.scenario_id}", run.run_id)
        resource = self.catalog.get_resource(run.resource_id)
        if resource is None:
            raise SpawnError(f"未找到角色：{run.resource_id}", run.run_id)
        return scenario, resource

    async def _prepare(
        self,
        run: ActiveRun,
        scenario: Scenario,
        resource: Resource,
    ) -> tuple[list[str], dict[str, str]]:
        """即时生成凭据配置文件，并组装参数和环境变量。"""
        secret = await self.secrets.resolve_secret(resource.id) if self.secrets else None
        if secret is None:
            if self.settings.require_credentials:
                raise SpawnError(f"未找到角色 {resource.name} 的凭据", run.run_id)
            logger.warning(f"监督器：角色 {resource.name} 没有凭据，以空凭据继续")

        scratch = Path(self.settings.scratch_dir or tempfile.gettempdir()).expanduser()
        scratch.mkdir(parents=True, exist_ok=True)
        config_path = scratch / f"bot_config-{run.run_id}.json"
        run.scratch_files.append(config_path)
        config_path.write_text(json.dumps({
            "user": secret.username if secret else "",
            "password": secret.password if secret else "",
            "character": resource.name,
            "scenarioId": scenario.id,
        }, indent=2), encoding="utf-8")
        if not IS_WINDOWS:
            os.chmod(config_path, 0o600)

        values = {
            "bot_config": str(config_path),
            "character": resource.name,
            "scenario": scenario.id,
        }
        raw_args = scenario.args if scenario.args is not None else self.settings.args
        args = [_render(arg, values) for arg in raw_args]

        env = {
            **os.environ,
            **self.settings.env,
            **scenario.env,
            "AUTOLAUNCHER_RUN_ID": run.run_id,
            "AUTOLAUNCHER_CHARACTER": resource.name,
            "AUTOLAUNCHER_SCENARIO": scenario.id,
            "AUTOLAUNCHER_BOT_CONFIG": str(config_path),
        }
        return args, env

    # ========== 监督 ==========

    async def _supervise(self, run: ActiveRun) -> None:
        process = run.process
        pumps = asyncio.gather(
            self._pump(run, process.stdout, "stdout"),
            self._pump(run, process.stderr, "stderr"),
        )
        try:
            returncode = await process.wait()
        except Exception as e:
            logger.error(f"监督器：等待运行 {run.run_id} 退出时出错：{e}")
            pumps.cancel()
            self._force_kill(run)
            self._finish(run, exit_code=process.returncode, signal_name=None, error=str(e))
            return

        # 以进程退出为准，而不是管道关闭
        exited_at_ms = self.timer.now_ms()
        if run.soft_timer:
            run.soft_timer.cancel()
            run.soft_timer = None
        try:
            await asyncio.wait_for(pumps, timeout=self.output_drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"监督器：运行 {run.run_id} 已退出，但输出管道仍被其他进程占用，停止读取")
        except Exception as e:
            logger.error(f"监督器：读取运行 {run.run_id} 的输出时出错：{e}")

        signal_name = None
        exit_code: int | None = returncode
        if returncode is not None and returncode < 0:
            signal_name = _signal_name(-returncode)
            exit_code = None
        elif IS_WINDOWS and run.state in (RunState.GRACEFUL_STOP, RunState.KILLING):
            # Windows 没有信号语义：由我们终止的进程视为被信号终止
            signal_name = "SIGTERM"
        self._finish(run, exit_code=exit_code, signal_name=signal_name, ended_at_ms=exited_at_ms)

    async def _pump(self, run: ActiveRun, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            run.log.feed(name, text)
            self.bus.publish(RunOutput(run_id=run.run_id, stream=name, data=text))
        run.log.flush(name)

    def _on_soft_timeout(self, run: ActiveRun) -> None:
        run.soft_timer = None
        if run.state != RunState.RUNNING:
            return
        logger.warning(f"监督器：运行 {run.run_id} 超过 {run.max_duration_ms}ms，发送优雅终止信号")
        run.timed_out = True
        self._begin_stop(run)
        self.bus.publish(RunTimeout(run_id=run.run_id, stage="graceful"))

    def _begin_stop(self, run: ActiveRun) -> None:
        run.state = RunState.GRACEFUL_STOP
        if run.soft_timer:
            run.soft_timer.cancel()
            run.soft_timer = None

        try:
            if IS_WINDOWS:
                run.process.terminate()
            else:
                run.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        except OSError as e:
            logger.error(f"监督器：无法向运行 {run.run_id} 发送优雅信号：{e}")
            run.state = RunState.KILLING
            self._force_kill(run)
            return

        run.hard_timer = self.timer.call_later(self.grace_window_ms, lambda: self._on_hard_timeout(run))

    def _on_hard_timeout(self, run: ActiveRun) -> None:
        run.hard_timer = None
        if run.state == RunState.EXITED:
            return
        logger.warning(f"监督器：运行 {run.run_id} 在宽限窗口内未退出，强制终止")
        run.state = RunState.KILLING
        self._force_kill(run)
        if run.timed_out:
            self.bus.publish(RunTimeout(run_id=run.run_id, stage="force"))

    def _force_kill(self, run: ActiveRun) -> None:
        if run.process is None:
            return
        try:
            run.process.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"监督器：无法强制终止进程 {run.process.pid}：{e}")

    def _finish(
        self,
        run: ActiveRun,
        exit_code: int | None,
        signal_name: str | None,
        error: str | None = None,
        ended_at_ms: int | None = None,
    ) -> None:
        """进入终态：取消计时器、分类、清理临时文件，然后发布 run:exit。"""
        if run.state == RunState.EXITED:
            return

        for handle in (run.soft_timer, run.hard_timer):
            if handle:
                handle.cancel()
        run.soft_timer = None
        run.hard_timer = None
        run.state = RunState.EXITED

        now = ended_at_ms if ended_at_ms is not None else self.timer.now_ms()
        duration = max(0, now - run.started_at_ms)
        status = classify_exit(exit_code, signal_name, duration, run.max_duration_ms, error)
        record = RunRecord(
            ts=iso_from_ms(now),
            run_id=run.run_id,
            entry_id=run.entry_id,
            schedule_id=run.schedule_id,
            scenario_id=run.scenario_id,
            resource_id=run.resource_id,
            status=status,
            duration_ms=duration,
            exit_code=exit_code,
            signal=signal_name,
            error=error,
        )

        self._cleanup(run)
        self._runs.pop(run.run_id, None)
        run.log.flush()

        logger.info(f"监督器：运行 {run.run_id} 已结束，状态 {status}（{duration}ms）")
        self.bus.publish(RunExit(run_id=run.run_id, record=record, log_buffer=run.log.lines()))

    def _cleanup(self, run: ActiveRun) -> None:
        for path in run.scratch_files:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"监督器：无法删除临时文件 {path}：{e}")
        run.scratch_files.clear()

    # ========== 公共 API ==========

    def stop(self, run_id: str) -> bool:
        """
        立即发送优雅信号并布防强制终止。

        对未知、已退出或正在停止的运行不做任何事，返回 False。
        """
        run = self._runs.get(run_id)
        if run is None or run.state in (RunState.EXITED, RunState.GRACEFUL_STOP, RunState.KILLING):
            return False
        if run.state == RunState.STARTING:
            run.stop_requested = True
            return True
        logger.info(f"监督器：正在停止运行 {run_id}")
        self._begin_stop(run)
        return True

    def stop_all(self) -> int:
        """停止所有活跃运行，返回发出停止请求的数量。"""
        return sum(1 for run_id in list(self._runs) if self.stop(run_id))

    async def wait_idle(self) -> None:
        """等待所有启动和监督任务完成。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_active_runs(self) -> list[ActiveRunInfo]:
        """所有尚未退出的运行的即时快照。"""
        now = self.timer.now_ms()
        snapshots = []
        for run in self._runs.values():
            elapsed = max(0, now - run.started_at_ms)
            snapshots.append(ActiveRunInfo(
                run_id=run.run_id,
                entry_id=run.entry_id,
                schedule_id=run.schedule_id,
                pid=run.process.pid if run.process else None,
                started_at_ms=run.started_at_ms,
                elapsed_ms=elapsed,
                remaining_ms=max(0, run.max_duration_ms - elapsed),
                state=run.state,
            ))
        return snapshots

    def get_run_logs(self, run_id: str, lines: int | None = None) -> str:
        """活跃运行的最近输出。"""
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"未找到运行 {run_id}")
        return "\n".join(run.log.tail(lines))

    def is_run_active(self, run_id: str) -> bool:
        return run_id in self._runs
