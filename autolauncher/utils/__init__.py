"""工具函数。"""

from autolauncher.utils.helpers import ensure_dir, get_data_path, iso_from_ms, ms_from_iso, parse_local_iso

__all__ = ["ensure_dir", "get_data_path", "iso_from_ms", "ms_from_iso", "parse_local_iso"]
