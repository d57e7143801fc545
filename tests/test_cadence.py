from datetime import datetime, timezone

import pytest

from autolauncher.errors import ConfigError
from autolauncher.schedule.cadence import (
    HOUR_MS,
    MINUTE_MS,
    compute_first_run,
    compute_next_run,
    iter_runs,
    validate_cadence,
)
from autolauncher.schedule.types import Cadence


def _utc_ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


# 测试带锚点的间隔节奏与锚点保持相位一致
def test_every_with_anchor_is_phase_locked() -> None:
    anchor = int(datetime(2026, 1, 5, 8, 0).timestamp() * 1000)
    now = anchor + 45 * MINUTE_MS
    cadence = Cadence.every("minutes", 60, anchor_ms=anchor)

    assert compute_first_run(cadence, now) == anchor + HOUR_MS


# 测试锚点在未来时首次触发就是锚点本身
def test_every_with_future_anchor() -> None:
    cadence = Cadence.every("hours", 2, anchor_ms=10_000_000)
    assert compute_first_run(cadence, 5_000) == 10_000_000


# 测试恰好落在锚点网格上的时刻取下一个网格点
def test_every_on_grid_point_is_strictly_later() -> None:
    cadence = Cadence.every("minutes", 5, anchor_ms=0)
    assert compute_first_run(cadence, 10 * MINUTE_MS) == 15 * MINUTE_MS


# 测试无锚点的间隔节奏从注册时刻起计算
def test_every_without_anchor() -> None:
    cadence = Cadence.every("minutes", 1)
    assert compute_first_run(cadence, 1_000) == 61_000
    assert compute_next_run(cadence, 61_000, 61_000) == 121_000


# 测试下次触发跳过已经错过的时刻
def test_every_next_skips_missed_occurrences() -> None:
    cadence = Cadence.every("minutes", 1)
    assert compute_next_run(cadence, 60_000, 200_000) == 240_000


# 测试过去的一次性节奏不会布防
def test_once_in_the_past_is_inert() -> None:
    assert compute_first_run(Cadence.once(1_000), 5_000) is None
    assert compute_first_run(Cadence.once(9_000), 5_000) == 9_000
    assert compute_next_run(Cadence.once(9_000), 9_000, 9_000) is None


# 测试指定时区的 cron 表达式
def test_cron_with_timezone() -> None:
    cadence = Cadence.cron("0 9 * * *", tz="UTC")
    now = _utc_ms(2026, 1, 5, 8, 30)

    first = compute_first_run(cadence, now)
    assert first == _utc_ms(2026, 1, 5, 9, 0)
    assert compute_next_run(cadence, first, first) == _utc_ms(2026, 1, 6, 9, 0)


# 测试本地时间的 cron 表达式落在整分钟
def test_cron_local_time() -> None:
    cadence = Cadence.cron("*/15 * * * *")
    now = _utc_ms(2026, 3, 1, 12, 7)

    first = compute_first_run(cadence, now)
    assert now < first <= now + 15 * MINUTE_MS
    assert first % MINUTE_MS == 0


# 测试无效的节奏抛出 ConfigError
def test_invalid_cadences() -> None:
    with pytest.raises(ConfigError):
        validate_cadence(Cadence.cron("not a cron"))
    with pytest.raises(ConfigError):
        validate_cadence(Cadence(kind="cron"))
    with pytest.raises(ConfigError):
        validate_cadence(Cadence.cron("0 9 * * *", tz="Mars/Olympus"))
    with pytest.raises(ConfigError):
        validate_cadence(Cadence.every("minutes", 0))
    with pytest.raises(ConfigError):
        validate_cadence(Cadence(kind="every", unit="days", n=1))
    with pytest.raises(ConfigError):
        validate_cadence(Cadence(kind="once"))


# 测试枚举前瞻窗口内的触发时间
def test_iter_runs() -> None:
    cadence = Cadence.every("hours", 12)
    runs = list(iter_runs(cadence, HOUR_MS, 48 * HOUR_MS))
    assert runs == [HOUR_MS, 13 * HOUR_MS, 25 * HOUR_MS, 37 * HOUR_MS]

    assert list(iter_runs(Cadence.once(500), 500, 1_000)) == [500]


# 测试节奏的可读描述
def test_describe() -> None:
    assert Cadence.cron("0 9 * * *").describe() == "cron 0 9 * * *"
    assert Cadence.every("minutes", 30).describe() == "every 30 minutes"
    assert Cadence.once(0).describe() == "once"
