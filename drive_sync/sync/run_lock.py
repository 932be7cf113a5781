"""
Drive Sync System - Service Run Lock
サービスごとの同期サイクルを1プロセスに限定するロック
"""

import logging
from pathlib import Path
from typing import Union

from ..core.file_lock import FileLock, LockTimeoutError

logger = logging.getLogger(__name__)


class ServiceRunLock:
    """待たずに取得を試みるサービス単位のロック

    同じサービスのサイクルが別プロセスで実行中なら取得に失敗する。
    HALF_OPENの試行が同時に2つ走ることを防ぐ。
    """

    def __init__(self, lock_dir: Union[str, Path], service_id: str):
        self.service_id = service_id
        self._lock = FileLock(Path(lock_dir).expanduser() / f"{service_id}.run.lock", timeout=0)

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    def try_acquire(self) -> bool:
        """ロックの取得を試みる"""
        try:
            self._lock.acquire()
        except LockTimeoutError:
            logger.info(f"Sync cycle for {self.service_id} is already running in another process")
            return False
        return True

    def release(self) -> None:
        self._lock.release()

    def __enter__(self) -> "ServiceRunLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
