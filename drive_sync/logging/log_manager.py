"""
Drive Sync System - Log Manager
同期ログの圧縮・削除・統計
"""

import gzip
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

LOG_PATTERNS = ("*.log", "*.jsonl")


@dataclass
class LogCleanupResult:
    """ログ整理結果"""
    files_processed: int = 0
    bytes_freed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "files_processed": self.files_processed,
            "bytes_freed": self.bytes_freed,
            "errors": self.errors,
        }


class LogManager:
    """ログ管理システム"""

    def __init__(self, log_directory: Path, patterns: Optional[List[str]] = None):
        """
        初期化

        Args:
            log_directory: ログディレクトリ
            patterns: 対象とするログファイルのglobパターン
        """
        self.log_directory = Path(log_directory).expanduser()
        self.patterns = tuple(patterns or LOG_PATTERNS)
        self._lock = threading.Lock()

        logger.info(f"LogManager initialized: {self.log_directory}")

    def _iter_log_files(self):
        if not self.log_directory.is_dir():
            return
        seen = set()
        for pattern in self.patterns:
            for log_file in self.log_directory.rglob(pattern):
                if log_file in seen or not log_file.is_file() or log_file.is_symlink():
                    continue
                seen.add(log_file)
                yield log_file

    @staticmethod
    def _is_candidate(log_file: Path, cutoff: datetime, min_size_bytes: int) -> bool:
        try:
            stat = log_file.stat()
        except FileNotFoundError:
            # 他プロセスが先に処理した
            return False
        return datetime.fromtimestamp(stat.st_mtime) < cutoff and stat.st_size > min_size_bytes

    def compress_logs(self,
                      older_than_days: int = 3,
                      min_size_mb: float = 1.0,
                      now: Optional[datetime] = None) -> LogCleanupResult:
        """
        古く大きいログファイルをgzip圧縮

        Args:
            older_than_days: この日数より古いファイルが対象
            min_size_mb: このサイズ（MB）を超えるファイルが対象
            now: 基準時刻

        Returns:
            圧縮結果（bytes_freed は圧縮で減ったバイト数）
        """
        cutoff = (now or datetime.now()) - timedelta(days=older_than_days)
        min_size = int(min_size_mb * 1024 * 1024)
        result = LogCleanupResult()

        with self._lock:
            for log_file in list(self._iter_log_files()):
                if not self._is_candidate(log_file, cutoff, min_size):
                    continue

                compressed_path = log_file.with_suffix(log_file.suffix + ".gz")
                try:
                    original_size = log_file.stat().st_size
                    with open(log_file, 'rb') as f_in:
                        with gzip.open(compressed_path, 'wb') as f_out:
                            shutil.copyfileobj(f_in, f_out)
                    log_file.unlink()
                except OSError as e:
                    logger.error(f"Failed to compress log file {log_file}: {e}")
                    compressed_path.unlink(missing_ok=True)
                    result.errors += 1
                    continue

                result.files_processed += 1
                result.bytes_freed += max(0, original_size - compressed_path.stat().st_size)
                logger.info(f"Compressed log file: {log_file.name}")

        if result.files_processed:
            logger.info(f"Log compression completed: compressed {result.files_processed} files")
        else:
            logger.info("No log files needed compression")
        return result

    def cleanup_logs(self,
                     older_than_days: int = 7,
                     min_size_mb: float = 10.0,
                     now: Optional[datetime] = None) -> LogCleanupResult:
        """古く大きいログファイルを削除"""
        cutoff = (now or datetime.now()) - timedelta(days=older_than_days)
        min_size = int(min_size_mb * 1024 * 1024)
        result = LogCleanupResult()

        with self._lock:
            for log_file in list(self._iter_log_files()):
                if not self._is_candidate(log_file, cutoff, min_size):
                    continue
                try:
                    size = log_file.stat().st_size
                    log_file.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.error(f"Failed to cleanup log file {log_file}: {e}")
                    result.errors += 1
                    continue

                result.files_processed += 1
                result.bytes_freed += size
                logger.info(f"Removed old log file: {log_file.name}")

        logger.info(
            f"Log cleanup completed: {result.files_processed} files deleted, "
            f"{result.bytes_freed} bytes freed"
        )
        return result

    def get_log_statistics(self) -> Dict[str, Any]:
        """ログ統計情報を取得"""
        stats = {
            "log_directory": str(self.log_directory),
            "files": 0,
            "compressed_files": 0,
            "total_size_mb": 0.0,
        }
        if not self.log_directory.is_dir():
            return stats

        for path in self.log_directory.rglob("*"):
            if not path.is_file():
                continue
            if path.suffix == ".gz":
                stats["compressed_files"] += 1
            else:
                stats["files"] += 1
            stats["total_size_mb"] += path.stat().st_size / (1024 * 1024)

        stats["total_size_mb"] = round(stats["total_size_mb"], 3)
        return stats
