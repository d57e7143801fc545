"""运行账本：按天存储的 JSONL 运行记录。"""

import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from loguru import logger

from autolauncher.process.types import RunRecord
from autolauncher.utils.helpers import ensure_dir, ms_from_iso

_DAY_FILE = re.compile(r"^\d{4}-\d{2}-\d{2}\.jsonl$")


class JsonlRunLedger:
    """
    运行历史。

    每条终态记录追加为一行 JSON，写入 `<dir>/YYYY-MM-DD.jsonl`（按记录时间的 UTC 日期）。
    """

    def __init__(self, history_dir: Path):
        self.history_dir = ensure_dir(Path(history_dir).expanduser())

    def _file_for(self, ts_ms: int) -> Path:
        day = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        return self.history_dir / f"{day}.jsonl"

    def append(self, record: RunRecord) -> None:
        """追加一条记录。"""
        path = self._file_for(ms_from_iso(record.ts))
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")

    def query(
        self,
        from_ms: int | None = None,
        to_ms: int | None = None,
        scenario_id: str | None = None,
        resource_id: str | None = None,
        status: str | None = None,
    ) -> list[RunRecord]:
        """按条件查询记录，最近的在前。"""
        matched: list[tuple[int, RunRecord]] = []

        for path in self._day_files():
            if not self._day_overlaps(path, from_ms, to_ms):
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    record = RunRecord.from_dict(json.loads(line))
                    ts = ms_from_iso(record.ts)
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"运行账本：无法解析 {path.name} 中的一行：{e}")
                    continue
                if from_ms is not None and ts < from_ms:
                    continue
                if to_ms is not None and ts > to_ms:
                    continue
                if scenario_id is not None and record.scenario_id != str(scenario_id):
                    continue
                if resource_id is not None and record.resource_id != resource_id:
                    continue
                if status is not None and record.status != status:
                    continue
                matched.append((ts, record))

        matched.sort(key=lambda item: item[0], reverse=True)
        return [record for _, record in matched]

    def prune(self, retention_days: int, now_ms: int | None = None) -> int:
        """删除超过保留天数的日文件，返回删除的文件数。"""
        now = (
            datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
            if now_ms is not None
            else datetime.now(timezone.utc)
        )
        cutoff = (now - timedelta(days=retention_days)).strftime("%Y-%m-%d")

        deleted = 0
        for path in self._day_files():
            # 文件名是 ISO 日期，可以直接按字符串比较
            if path.stem < cutoff:
                path.unlink()
                deleted += 1

        if deleted:
            logger.info(f"运行账本：已删除 {deleted} 个过期历史文件")
        return deleted

    def _day_files(self) -> list[Path]:
        return sorted(p for p in self.history_dir.iterdir() if _DAY_FILE.match(p.name))

    @staticmethod
    def _day_overlaps(path: Path, from_ms: int | None, to_ms: int | None) -> bool:
        day_start = datetime.strptime(path.stem, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        start_ms = int(day_start.timestamp() * 1000)
        end_ms = start_ms + 24 * 60 * 60 * 1000
        if from_ms is not None and end_ms <= from_ms:
            return False
        if to_ms is not None and start_ms > to_ms:
            return False
        return True
