"""运行历史账本。"""

from autolauncher.ledger.jsonl import JsonlRunLedger

__all__ = ["JsonlRunLedger"]
