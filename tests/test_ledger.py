import json
from datetime import datetime, timezone

from autolauncher.ledger import JsonlRunLedger
from autolauncher.process.types import RunRecord


def _ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def _record(run_id: str, ts: str, status: str = "success", **kwargs) -> RunRecord:
    return RunRecord(
        ts=ts,
        run_id=run_id,
        entry_id=kwargs.pop("entry_id", "e1"),
        schedule_id="s1",
        scenario_id=kwargs.pop("scenario_id", "1"),
        resource_id=kwargs.pop("resource_id", "char-1"),
        status=status,
        duration_ms=1_000,
        **kwargs,
    )


# 测试记录按 UTC 日期写入日文件
def test_append_writes_day_files(tmp_path) -> None:
    ledger = JsonlRunLedger(tmp_path)
    ledger.append(_record("r1", "2026-01-05T23:59:00.000Z", exit_code=0))
    ledger.append(_record("r2", "2026-01-06T00:01:00.000Z", status="timeout", signal="SIGINT"))

    assert sorted(p.name for p in tmp_path.iterdir()) == ["2026-01-05.jsonl", "2026-01-06.jsonl"]
    line = json.loads((tmp_path / "2026-01-06.jsonl").read_text(encoding="utf-8"))
    assert line == {
        "ts": "2026-01-06T00:01:00.000Z",
        "runId": "r2",
        "entryId": "e1",
        "scheduleId": "s1",
        "scenarioId": "1",
        "characterId": "char-1",
        "status": "timeout",
        "durationMs": 1_000,
        "signal": "SIGINT",
    }


# 测试查询按时间倒序返回，并支持过滤
def test_query_filters_and_order(tmp_path) -> None:
    ledger = JsonlRunLedger(tmp_path)
    ledger.append(_record("r1", "2026-01-05T10:00:00.000Z"))
    ledger.append(_record("r2", "2026-01-05T12:00:00.000Z", status="error", error="boom"))
    ledger.append(_record("r3", "2026-01-06T08:00:00.000Z", resource_id="char-2"))
    ledger.append(_record("r4", "2026-01-07T08:00:00.000Z", scenario_id="2"))

    assert [r.run_id for r in ledger.query()] == ["r4", "r3", "r2", "r1"]
    assert [r.run_id for r in ledger.query(status="error")] == ["r2"]
    assert ledger.query(status="error")[0].error == "boom"
    assert [r.run_id for r in ledger.query(resource_id="char-2")] == ["r3"]
    assert [r.run_id for r in ledger.query(scenario_id="2")] == ["r4"]
    assert [r.run_id for r in ledger.query(from_ms=_ms(2026, 1, 5, 11), to_ms=_ms(2026, 1, 6, 9))] == ["r3", "r2"]


# 测试损坏的行被跳过
def test_query_skips_corrupt_lines(tmp_path) -> None:
    ledger = JsonlRunLedger(tmp_path)
    ledger.append(_record("r1", "2026-01-05T10:00:00.000Z"))
    with open(tmp_path / "2026-01-05.jsonl", "a", encoding="utf-8") as f:
        f.write("{ broken\n\n")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert [r.run_id for r in ledger.query()] == ["r1"]


# 测试清理超过保留天数的日文件
def test_prune(tmp_path) -> None:
    ledger = JsonlRunLedger(tmp_path)
    for day in (1, 9, 10, 15):
        ledger.append(_record(f"r{day}", f"2026-01-{day:02d}T10:00:00.000Z"))

    deleted = ledger.prune(retention_days=5, now_ms=_ms(2026, 1, 15, 12))

    assert deleted == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["2026-01-10.jsonl", "2026-01-15.jsonl"]
    assert ledger.prune(retention_days=5, now_ms=_ms(2026, 1, 15, 12)) == 0
