"""
Drive Sync System - Sync Runner
外部同期ツール（Unison）のサブプロセス実行
"""

import logging
import os
import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..exceptions import ServiceNotFoundError

logger = logging.getLogger(__name__)

# timeout(1) と同じ終了コードで時間切れを表す
TIMEOUT_EXIT_STATUS = 124
NOT_EXECUTABLE_EXIT_STATUS = 126
NOT_FOUND_EXIT_STATUS = 127

DEFAULT_UNISON_ARGS = ("-batch", "-ui", "text", "-times", "-fastcheck", "-prefer", "newer")


@dataclass
class SyncResult:
    """1回の同期実行結果"""
    exit_status: int
    output: str
    duration: float
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_status == 0

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return asdict(self)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class UnisonSyncRunner:
    """Unisonプロファイル単位で同期を実行"""

    def __init__(self,
                 profiles: Dict[str, str],
                 unison_binary: str = "unison",
                 extra_args: Optional[Sequence[str]] = None):
        """
        初期化

        Args:
            profiles: サービスIDからUnisonプロファイル名へのマッピング
            unison_binary: unisonの実行ファイル
            extra_args: 追加の引数
        """
        self.profiles = dict(profiles)
        self.unison_binary = unison_binary
        self.args = list(DEFAULT_UNISON_ARGS) + list(extra_args or ())

    def build_command(self, service_id: str, paths: Optional[Sequence[str]] = None) -> List[str]:
        """実行コマンドを組み立て"""
        profile = self.profiles.get(service_id)
        if profile is None:
            raise ServiceNotFoundError("No sync profile configured", service_id)

        command = [self.unison_binary, *self.args]
        for path in paths or ():
            command.extend(["-path", path])
        command.append(profile)
        return command

    def execute_sync(self, service_id: str, timeout: float) -> SyncResult:
        """
        サービス全体を同期

        Args:
            service_id: サービスID
            timeout: 実行時間の上限（秒）

        Returns:
            同期結果。時間切れは終了コード124、実行ファイルが無い場合は127
        """
        return self._run(service_id, self.build_command(service_id), timeout)

    def execute_paths(self, service_id: str, paths: Sequence[str], timeout: float) -> SyncResult:
        """指定したパスだけを同期（-path）"""
        return self._run(service_id, self.build_command(service_id, paths), timeout)

    def _run(self, service_id: str, command: List[str], timeout: float) -> SyncResult:
        logger.info(f"Running sync for {service_id} (timeout {timeout:.0f}s): {' '.join(command)}")
        start_time = time.monotonic()

        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            duration = time.monotonic() - start_time
            output = _text(e.stdout) + _text(e.stderr)
            logger.warning(f"Sync for {service_id} timed out after {duration:.1f}s")
            return SyncResult(
                exit_status=TIMEOUT_EXIT_STATUS,
                output=output + f"\nTimeout - sync took longer than {timeout:.0f} seconds",
                duration=duration,
                timed_out=True,
            )
        except FileNotFoundError as e:
            logger.error(f"Sync tool not found: {command[0]}")
            return SyncResult(NOT_FOUND_EXIT_STATUS, str(e), time.monotonic() - start_time)
        except PermissionError as e:
            logger.error(f"Sync tool is not executable: {command[0]}")
            return SyncResult(NOT_EXECUTABLE_EXIT_STATUS, str(e), time.monotonic() - start_time)

        duration = time.monotonic() - start_time
        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode == 0:
            logger.info(f"Sync for {service_id} completed in {duration:.1f}s")
        else:
            logger.warning(f"Sync for {service_id} failed with exit status {completed.returncode}")

        return SyncResult(completed.returncode, output, duration)


def wait_for_path(path: Path,
                  max_wait: float,
                  interval: float = 2.0,
                  sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    クラウドのマウントポイントが読めるようになるまで待機

    Args:
        path: マウントポイント
        max_wait: 待機上限（秒）。0以下なら1回だけ確認する
        interval: 確認間隔（秒）
        sleep: 待機関数

    Returns:
        ディレクトリとして読める状態になったか
    """
    waited = 0.0
    while True:
        if path.is_dir() and os.access(path, os.R_OK):
            logger.info(f"{path} is accessible")
            return True
        if waited >= max_wait:
            break
        logger.info(f"Waiting for {path}... ({waited:.0f}s/{max_wait:.0f}s)")
        step = min(interval, max_wait - waited)
        sleep(step)
        waited += step

    logger.error(f"{path} not accessible after {max_wait:.0f}s")
    return False
