"""
Drive Sync System - File Lock
プロセス間で共有するアドバイザリファイルロック
"""

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """ロック取得がタイムアウトした場合のエラー"""
    pass


class FileLock:
    """fcntl.flock によるアドバイザリロック

    ロックファイル自体は削除しない。削除すると別プロセスが
    異なるinodeをロックしてしまうため。
    """

    def __init__(self,
                 lock_path: Union[str, Path],
                 timeout: Optional[float] = 10.0,
                 poll_interval: float = 0.05):
        """
        初期化

        Args:
            lock_path: ロックファイルのパス
            timeout: 取得待ちの上限（秒）。0なら待たない、Noneなら無期限
            poll_interval: 取得を再試行する間隔（秒）
        """
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """ロックを取得"""
        if self._fd is not None:
            raise RuntimeError(f"Lock already held: {self.lock_path}")

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if deadline is not None and time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(f"Timed out waiting for lock: {self.lock_path}")
                time.sleep(self.poll_interval)
            except OSError:
                os.close(fd)
                raise

        # 診断用に保持者のPIDを書き込む
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        self._fd = fd
        logger.debug(f"Lock acquired: {self.lock_path}")

    def release(self) -> None:
        """ロックを解放"""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Lock released: {self.lock_path}")

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
