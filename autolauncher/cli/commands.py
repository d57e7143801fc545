"""autolauncher 的 CLI 命令。"""

import asyncio
import signal
import sys
import time
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from autolauncher import __logo__, __version__

app = typer.Typer(
    name="autolauncher",
    help=f"{__logo__} autolauncher - 定时场景启动器",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    "success": "green",
    "error": "red",
    "timeout": "yellow",
    "killed": "magenta",
    "skipped": "dim",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} autolauncher v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """autolauncher - 定时场景启动器。"""
    pass


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _load(config_path: Path | None):
    from autolauncher.config.loader import load_config
    return load_config(config_path)


def _format_ms(ms: int | None) -> str:
    if ms is None:
        return ""
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ms / 1000))


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """初始化 autolauncher 配置。"""
    from autolauncher.config.loader import get_config_path, save_config
    from autolauncher.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]配置已存在于 {config_path}[/yellow]")
        if not typer.confirm("覆盖？"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] 已在 {config_path} 创建配置")

    config.ledger.path.mkdir(parents=True, exist_ok=True)
    console.print(f"[green]✓[/green] 运行历史目录：{config.ledger.path}")

    console.print(f"\n{__logo__} autolauncher 已就绪！")
    console.print("\n后续步骤：")
    console.print("  1. 在 [cyan]~/.autolauncher/config.json[/cyan] 中添加场景、角色、凭据和调度")
    console.print("  2. 检查调度：[cyan]autolauncher validate[/cyan]")
    console.print("  3. 启动：[cyan]autolauncher run[/cyan]")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    config_path: Path = typer.Option(None, "--config", "-c", help="配置文件路径"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
    follow: bool = typer.Option(False, "--follow", "-f", help="在控制台输出运行的 stdout/stderr"),
):
    """启动调度器并一直运行，直到被中断。"""
    from autolauncher.bus.events import RunOutput
    from autolauncher.launcher.service import Launcher

    _setup_logging(verbose)
    config = _load(config_path)

    console.print(f"{__logo__} 正在启动 autolauncher...")

    async def serve():
        launcher = Launcher(config)
        if follow:
            launcher.bus.subscribe(
                RunOutput,
                lambda e: console.print(f"[dim]{e.run_id[:8]}[/dim] {e.data.rstrip()}", highlight=False),
            )

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)

        await launcher.start()
        jobs = launcher.engine.status()["jobs"]
        console.print(f"[green]✓[/green] 已布防 {jobs} 个条目，全局并发上限 {config.scheduler.global_concurrency_limit}")

        try:
            await stop_event.wait()
        finally:
            console.print("\n正在关闭...")
            await launcher.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        console.print("已停止")


# ============================================================================
# Schedule Commands
# ============================================================================


def _register_offline(config):
    """在虚拟计时器上注册调度，返回引擎和收集到的条目错误。"""
    from autolauncher.bus.events import EntryError
    from autolauncher.bus.queue import EventBus
    from autolauncher.schedule.engine import TriggerEngine
    from autolauncher.timer.virtual import VirtualTimer

    bus = EventBus()
    errors: list[EntryError] = []
    bus.subscribe(EntryError, errors.append)
    engine = TriggerEngine(bus, VirtualTimer(start_ms=int(time.time() * 1000)))
    engine.register_schedules(config.to_schedules())
    return engine, errors


@app.command()
def upcoming(
    limit: int = typer.Option(20, "--limit", "-n", help="最多显示的条数"),
    config_path: Path = typer.Option(None, "--config", "-c", help="配置文件路径"),
):
    """列出未来 48 小时内的运行。"""
    config = _load(config_path)
    engine, _ = _register_offline(config)
    runs = engine.get_upcoming_runs(limit)

    if not runs:
        console.print("未来 48 小时内没有运行。")
        return

    catalog = config.catalog()
    table = Table(title="Upcoming Runs")
    table.add_column("Next Run", style="cyan")
    table.add_column("Entry")
    table.add_column("Scenario")
    table.add_column("Character")
    table.add_column("Cadence")

    for r in runs:
        scenario = catalog.get_scenario(r.scenario_id)
        resource = catalog.get_resource(r.resource_id)
        table.add_row(
            _format_ms(r.next_run_at_ms),
            r.entry_id,
            scenario.name if scenario else f"[red]{r.scenario_id}[/red]",
            resource.name if resource else f"[red]{r.resource_id}[/red]",
            r.cadence_label,
        )

    console.print(table)


@app.command()
def validate(
    config_path: Path = typer.Option(None, "--config", "-c", help="配置文件路径"),
):
    """检查调度配置，报告无法布防的条目。"""
    config = _load(config_path)
    engine, errors = _register_offline(config)
    catalog = config.catalog()

    problems = [(e.schedule_id, e.entry_id, e.error) for e in errors]
    for schedule in config.to_schedules():
        for entry in schedule.entries:
            if catalog.get_scenario(entry.scenario_id) is None:
                problems.append((schedule.id, entry.id, f"未知的场景：{entry.scenario_id}"))
            if catalog.get_resource(entry.resource_id) is None:
                problems.append((schedule.id, entry.id, f"未知的角色：{entry.resource_id}"))

    console.print(f"已布防 {engine.status()['jobs']} 个条目")

    if not problems:
        console.print("[green]✓[/green] 配置有效")
        return

    table = Table(title="Problems")
    table.add_column("Schedule", style="cyan")
    table.add_column("Entry")
    table.add_column("Error", style="red")
    for schedule_id, entry_id, error in problems:
        table.add_row(schedule_id, entry_id, error)
    console.print(table)
    raise typer.Exit(1)


# ============================================================================
# History / Status
# ============================================================================


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="最多显示的条数"),
    days: int = typer.Option(1, "--days", "-d", help="查询最近 N 天"),
    status_filter: str = typer.Option(None, "--status", "-s", help="按状态过滤（success、error、timeout、killed、skipped）"),
    scenario: str = typer.Option(None, "--scenario", help="按场景 ID 过滤"),
    character: str = typer.Option(None, "--character", help="按角色 ID 过滤"),
    config_path: Path = typer.Option(None, "--config", "-c", help="配置文件路径"),
):
    """显示运行历史。"""
    from autolauncher.ledger.jsonl import JsonlRunLedger

    config = _load(config_path)
    ledger = JsonlRunLedger(config.ledger.path)
    from_ms = int(time.time() * 1000) - days * 24 * 60 * 60 * 1000
    records = ledger.query(
        from_ms=from_ms,
        scenario_id=scenario,
        resource_id=character,
        status=status_filter,
    )[:limit]

    if not records:
        console.print("没有运行记录。")
        return

    table = Table(title="Run History")
    table.add_column("Time", style="cyan")
    table.add_column("Entry")
    table.add_column("Scenario")
    table.add_column("Character")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Detail")

    for record in records:
        style = STATUS_STYLES.get(record.status, "")
        detail = record.error or record.signal or (f"exit {record.exit_code}" if record.exit_code is not None else "")
        table.add_row(
            record.ts,
            record.entry_id,
            record.scenario_id,
            record.resource_id,
            f"[{style}]{record.status}[/{style}]" if style else record.status,
            f"{record.duration_ms / 1000:.1f}s",
            detail,
        )

    console.print(table)


@app.command()
def status(
    config_path: Path = typer.Option(None, "--config", "-c", help="配置文件路径"),
):
    """显示 autolauncher 状态。"""
    from autolauncher.config.loader import get_config_path

    path = config_path or get_config_path()
    config = _load(config_path)

    console.print(f"{__logo__} autolauncher 状态\n")

    console.print(f"Config: {path} {'[green]✓[/green]' if path.exists() else '[red]✗[/red]'}")
    ledger_dir = config.ledger.path
    console.print(f"Run history: {ledger_dir} {'[green]✓[/green]' if ledger_dir.exists() else '[dim]not created[/dim]'}")

    schedules = config.to_schedules()
    entries = sum(len(s.entries) for s in schedules)
    enabled = sum(1 for s in schedules if s.enabled for e in s.entries if e.enabled)
    console.print(f"Schedules: {len(schedules)}（{enabled}/{entries} 个条目已启用）")
    console.print(f"Scenarios: {len(config.scenarios)}")
    console.print(f"Characters: {len(config.characters)}")
    console.print(f"Global concurrency limit: {config.scheduler.global_concurrency_limit}")
    console.print(f"Launcher: {config.launcher.command} {' '.join(config.launcher.args)}")


if __name__ == "__main__":
    app()
