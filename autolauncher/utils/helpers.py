"""autolauncher 的辅助函数。"""

from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """确保目录存在，返回该目录。"""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 autolauncher 数据目录（~/.autolauncher）。"""
    return ensure_dir(Path.home() / ".autolauncher")


def iso_from_ms(ms: int) -> str:
    """毫秒时间戳转换为 UTC ISO-8601 字符串（以 Z 结尾）。"""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_local_iso(value: str) -> int:
    """
    解析 ISO 时间字符串为毫秒时间戳。

    不带时区的时间按本地时间解释。末尾的 "Z" 也会被去掉并按本地时间解释，
    与旧版界面写入时间的方式保持一致。
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    dt = datetime.fromisoformat(text)
    return int(dt.timestamp() * 1000)


def ms_from_iso(value: str) -> int:
    """解析带时区的 ISO 时间（例如 iso_from_ms 的输出）为毫秒时间戳。"""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)
