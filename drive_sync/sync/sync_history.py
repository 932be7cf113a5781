"""
Drive Sync System - Sync History
同期試行の履歴（JSON Lines）と適応タイムアウト用の集計
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class SyncHistoryEntry:
    """同期履歴エントリー"""
    service_id: str
    status: str                      # success / failure / timeout
    exit_status: int
    duration: float
    timed_out: bool = False
    category: Optional[str] = None
    attempt: int = 1
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return asdict(self)


class SyncHistory:
    """同期履歴の記録と参照"""

    def __init__(self, history_file: Union[str, Path]):
        self.history_file = Path(history_file).expanduser()
        self._lock = threading.Lock()

    def record(self, entry: SyncHistoryEntry) -> None:
        """1行追記"""
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._lock:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.history_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def entries(self, service_id: Optional[str] = None) -> List[SyncHistoryEntry]:
        """履歴を古い順に取得（壊れた行は読み飛ばす）"""
        if not self.history_file.exists():
            return []

        result: List[SyncHistoryEntry] = []
        with open(self.history_file, "r", encoding="utf-8", errors="replace") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = SyncHistoryEntry(**json.loads(line))
                except (ValueError, TypeError) as e:
                    logger.debug(f"Skipping malformed history line {line_number}: {e}")
                    continue
                if service_id is None or entry.service_id == service_id:
                    result.append(entry)
        return result

    def recent(self, service_id: Optional[str] = None, limit: int = 20) -> List[SyncHistoryEntry]:
        """新しい順に最大limit件"""
        return list(reversed(self.entries(service_id)[-limit:]))

    def is_first_sync(self, service_id: str) -> bool:
        """成功した同期が一度も記録されていないか"""
        return not any(entry.status == "success" for entry in self.entries(service_id))

    def recent_timeouts(self, service_id: str, window: int = 10) -> int:
        """直近window件のうち時間切れだった件数"""
        return sum(1 for entry in self.entries(service_id)[-window:] if entry.timed_out)

    def consecutive_failures(self, service_id: str) -> int:
        """最後の成功以降の失敗数"""
        count = 0
        for entry in reversed(self.entries(service_id)):
            if entry.status == "success":
                break
            count += 1
        return count
