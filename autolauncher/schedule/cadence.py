"""节奏计算：首次触发、下次触发以及未来触发时间的枚举。"""

from datetime import datetime
from typing import Iterator
from zoneinfo import ZoneInfo

from croniter import croniter
from dateutil.tz import tzlocal

from autolauncher.errors import ConfigError
from autolauncher.schedule.types import Cadence

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

_UNIT_MS = {
    "minutes": MINUTE_MS,
    "hours": HOUR_MS,
}


def interval_ms(cadence: Cadence) -> int:
    """计算 "every" 节奏的间隔（毫秒）。"""
    if cadence.unit not in _UNIT_MS:
        raise ConfigError(f"未知的间隔单位：{cadence.unit}")
    if not isinstance(cadence.n, int) or isinstance(cadence.n, bool) or cadence.n <= 0:
        raise ConfigError(f"间隔数量必须为正整数：{cadence.n}")
    return cadence.n * _UNIT_MS[cadence.unit]


def _zone(tz: str | None):
    if not tz:
        return tzlocal()
    try:
        return ZoneInfo(tz)
    except (KeyError, ValueError) as e:
        raise ConfigError(f"未知的时区：{tz}") from e


def _cron_next(expr: str, tz: str | None, base_ms: int) -> int:
    """严格晚于 base_ms 的下一次 cron 触发时间。"""
    base = datetime.fromtimestamp(base_ms / 1000, tz=_zone(tz))
    try:
        next_time = croniter(expr, base).get_next(float)
    except (ValueError, KeyError) as e:
        raise ConfigError(f"无效的 cron 表达式 '{expr}'：{e}") from e
    return int(next_time * 1000)


def _phase_locked_next(anchor_ms: int, step_ms: int, now_ms: int) -> int:
    """锚点加上整数个间隔，直到严格大于 now_ms。"""
    if anchor_ms > now_ms:
        return anchor_ms
    k = (now_ms - anchor_ms) // step_ms + 1
    return anchor_ms + k * step_ms


def validate_cadence(cadence: Cadence) -> None:
    """检查节奏是否格式正确，否则抛出 ConfigError。"""
    if cadence.error:
        raise ConfigError(cadence.error)
    if cadence.kind == "cron":
        if not cadence.expr or not cadence.expr.strip():
            raise ConfigError("cron 节奏缺少表达式")
        if not croniter.is_valid(cadence.expr):
            raise ConfigError(f"无效的 cron 表达式：'{cadence.expr}'")
        _zone(cadence.tz)
    elif cadence.kind == "every":
        interval_ms(cadence)
    elif cadence.kind == "once":
        if cadence.at_ms is None:
            raise ConfigError("一次性节奏缺少目标时间")
    else:
        raise ConfigError(f"未知的节奏类型：{cadence.kind}")


def compute_first_run(cadence: Cadence, now_ms: int) -> int | None:
    """
    计算注册时的首次触发时间。

    返回 None 表示不应布防（一次性节奏的目标时间已过）。
    """
    validate_cadence(cadence)

    if cadence.kind == "once":
        return cadence.at_ms if cadence.at_ms > now_ms else None

    if cadence.kind == "every":
        step = interval_ms(cadence)
        if cadence.anchor_ms is None:
            # 无锚点：从注册时刻起自由运行
            return now_ms + step
        return _phase_locked_next(cadence.anchor_ms, step, now_ms)

    return _cron_next(cadence.expr, cadence.tz, now_ms)


def compute_next_run(cadence: Cadence, previous_ms: int, now_ms: int) -> int | None:
    """
    计算上一次计划触发 previous_ms 之后的下一次触发时间。

    间隔节奏以上一次计划时间为相位基准，跳过已经过去的时刻。
    """
    if cadence.kind == "once":
        return None

    if cadence.kind == "every":
        return _phase_locked_next(previous_ms, interval_ms(cadence), now_ms)

    return _cron_next(cadence.expr, cadence.tz, max(previous_ms, now_ms))


def iter_runs(cadence: Cadence, first_ms: int, until_ms: int) -> Iterator[int]:
    """从 first_ms 开始枚举不晚于 until_ms 的所有触发时间。"""
    current: int | None = first_ms
    while current is not None and current <= until_ms:
        yield current
        if cadence.kind == "once":
            return
        if cadence.kind == "every":
            current = current + interval_ms(cadence)
        else:
            current = _cron_next(cadence.expr, cadence.tz, current)
