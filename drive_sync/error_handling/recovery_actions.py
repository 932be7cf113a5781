"""
Drive Sync System - Recovery Actions
エラーカテゴリごとの復旧アクション実装

各アクションは RecoveryContext を受け取り、実行後に検証した効果を bool で返す。
コマンドの終了コードだけで成功とは判断しない。
"""

import fnmatch
import logging
import os
import re
import shutil
import socket
import stat
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import psutil

from ..logging.log_manager import LogManager
from .error_classifier import ErrorCategory
from .error_policy import RecoveryActionType

logger = logging.getLogger(__name__)

# 同期の妨げになる一時ファイル
TEMP_FILE_PATTERNS = ("*.tmp", "*.temp", ".DS_Store", "Thumbs.db")
LOCK_FILE_PATTERN = "*.lock"
STALE_LOCK_SECONDS = 3600
# クラウド側で扱えないファイル名の文字
INVALID_NAME_CHARS = re.compile(r'[:"<>|]')
CONFLICT_PATTERNS = ("*conflict*", "*.orig", "*.backup")
ARCHIVE_ERROR_PATTERN = re.compile(r"deadlock|archive|corrupt|inconsistent", re.IGNORECASE)
FAILED_FILE_LINE = re.compile(r"failed|error|skipped", re.IGNORECASE)
ABSOLUTE_PATH = re.compile(r"(/[^\s'\"\]\[]+)")

PERMISSION_FIX_LIMIT = 20
FAILED_FILE_LIMIT = 10
GB = 1024 * 1024 * 1024
CREDENTIAL_REFRESH_TIMEOUT = 120.0


@dataclass
class RecoveryContext:
    """復旧アクションに渡す実行コンテキスト"""
    service_id: str
    error_category: Optional[ErrorCategory] = None
    exit_status: int = 0
    output: str = ""
    sync_root: Optional[Path] = None          # ローカル側の同期ルート
    remote_root: Optional[Path] = None        # クラウドのマウントポイント
    profile_name: Optional[str] = None
    profile_dir: Path = field(default_factory=lambda: Path.home() / ".unison")
    profile_backup_dir: Optional[Path] = None
    backup_dir: Path = field(default_factory=lambda: Path.home() / ".drive_sync" / "backups")
    log_dir: Path = field(default_factory=lambda: Path.home() / ".drive_sync" / "logs")
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    credential_refresh_command: Optional[List[str]] = None
    endpoints: List[str] = field(default_factory=list)
    probe_hosts: List[str] = field(default_factory=lambda: ["8.8.8.8", "1.1.1.1"])
    probe_port: int = 53
    connect_timeout: float = 5.0
    connectivity_wait_seconds: float = 300.0
    connectivity_interval: float = 10.0
    min_free_bytes: int = GB
    selective_sync: Optional[Callable[[List[str], float], bool]] = None   # (paths, timeout) -> 成否
    selective_timeout: float = 300.0
    failed_paths: List[str] = field(default_factory=list)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.time
    deadline_at: Optional[float] = None       # サイクル期限（clock基準）

    def __post_init__(self):
        for name in ("sync_root", "remote_root", "profile_dir", "profile_backup_dir",
                     "backup_dir", "log_dir", "temp_dir"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, Path(value).expanduser())

    def roots(self) -> List[Path]:
        """設定されている同期ルート"""
        return [root for root in (self.remote_root, self.sync_root) if root is not None]

    @property
    def archive_dir(self) -> Path:
        # Unisonはプロファイルとアーカイブを同じディレクトリに置く
        return self.profile_dir

    def timestamp(self) -> str:
        return datetime.fromtimestamp(self.clock()).strftime("%Y%m%d_%H%M%S")

    def limit_to(self, remaining_seconds: Optional[float]) -> None:
        """サイクル期限までの残り時間を設定（Noneなら期限なし）"""
        if remaining_seconds is None:
            self.deadline_at = None
        else:
            self.deadline_at = self.clock() + max(0.0, remaining_seconds)

    def time_left(self) -> Optional[float]:
        if self.deadline_at is None:
            return None
        return max(0.0, self.deadline_at - self.clock())

    def bounded(self, seconds: float) -> float:
        """待機・実行時間をサイクル期限の残り時間で打ち切る"""
        left = self.time_left()
        return seconds if left is None else min(seconds, left)

    @property
    def deadline_expired(self) -> bool:
        return self.time_left() == 0.0


RecoveryHandler = Callable[[RecoveryContext], bool]


# ---------------------------------------------------------------------------
# ファイルシステム補助
# ---------------------------------------------------------------------------

def _is_accessible_dir(path: Optional[Path]) -> bool:
    return path is not None and path.is_dir() and os.access(path, os.R_OK | os.W_OK | os.X_OK)


def _walk_files(root: Path) -> Iterator[Path]:
    """シンボリックリンクを辿らずにファイルを列挙（途中の削除は無視）"""
    for dirpath, dirnames, filenames in os.walk(root, onerror=lambda e: None):
        for name in filenames:
            yield Path(dirpath) / name


def _needs_permission_fix(path: Path) -> bool:
    try:
        mode = path.lstat().st_mode
    except FileNotFoundError:
        return False
    if stat.S_ISLNK(mode):
        return False
    if stat.S_ISDIR(mode):
        return (mode & stat.S_IRWXU) != stat.S_IRWXU
    return (mode & (stat.S_IRUSR | stat.S_IWUSR)) != (stat.S_IRUSR | stat.S_IWUSR)


def _grant_owner_access(path: Path) -> bool:
    try:
        mode = path.lstat().st_mode
        wanted = stat.S_IRWXU if stat.S_ISDIR(mode) else stat.S_IRUSR | stat.S_IWUSR
        os.chmod(path, stat.S_IMODE(mode) | wanted)
        return not _needs_permission_fix(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to fix permissions for {path}: {e}")
        return False


def _find_permission_issues(root: Path, limit: int) -> List[Path]:
    issues: List[Path] = []
    if _needs_permission_fix(root):
        issues.append(root)
    for dirpath, dirnames, filenames in os.walk(root, onerror=lambda e: None):
        for name in dirnames + filenames:
            if len(issues) >= limit:
                return issues
            path = Path(dirpath) / name
            if _needs_permission_fix(path):
                issues.append(path)
        # 権限のないディレクトリは中に入れないため先に直す
        dirnames[:] = [d for d in dirnames if os.access(Path(dirpath) / d, os.R_OK | os.X_OK)]
    return issues


def _fix_permission_tree(root: Path, limit: int = PERMISSION_FIX_LIMIT) -> Tuple[int, int]:
    """(修正数, 修正できなかった数) を返す"""
    fixed = failed = 0
    for path in _find_permission_issues(root, limit):
        if _grant_owner_access(path):
            fixed += 1
            logger.info(f"Fixed permissions for: {path}")
        else:
            failed += 1
    return fixed, failed


def _remove_path(path: Path) -> bool:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except FileNotFoundError:
        # 外部（クラウドのデーモン等）が先に削除した
        return False
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


def _free_bytes(path: Path) -> int:
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return psutil.disk_usage(str(probe)).free


def _tcp_reachable(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ---------------------------------------------------------------------------
# 認証 (authentication)
# ---------------------------------------------------------------------------

def refresh_credentials(ctx: RecoveryContext) -> bool:
    """設定された認証更新コマンドを実行し、マウントへのアクセスを検証"""
    logger.info(f"Attempting credential refresh for {ctx.service_id}")

    if not ctx.credential_refresh_command:
        logger.info(f"No credential refresh procedure for service: {ctx.service_id}")
        return False

    timeout = ctx.bounded(CREDENTIAL_REFRESH_TIMEOUT)
    if timeout <= 0:
        logger.warning(f"No time left in the sync cycle to refresh credentials for {ctx.service_id}")
        return False

    before = _is_accessible_dir(ctx.remote_root)
    logger.info(f"Credential check before refresh for {ctx.service_id}: accessible={before}")

    try:
        completed = subprocess.run(
            ctx.credential_refresh_command,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.warning(f"Credential refresh command not found: {ctx.credential_refresh_command[0]}")
        return False
    except subprocess.TimeoutExpired:
        logger.warning(f"Credential refresh timed out for {ctx.service_id}")
        return False

    if completed.returncode != 0:
        logger.warning(
            f"Credential refresh command failed for {ctx.service_id} "
            f"(exit {completed.returncode}): {completed.stderr.strip()[:200]}"
        )
        return False

    after = _is_accessible_dir(ctx.remote_root)
    if after:
        logger.info(f"Credential refresh verified for {ctx.service_id}: {ctx.remote_root} is accessible")
    else:
        logger.warning(f"Credential refresh did not restore access to {ctx.remote_root}")
    return after


def validate_permissions(ctx: RecoveryContext) -> bool:
    """クラウド側ルートの権限を検証し、所有者権限を修正"""
    logger.info(f"Validating and fixing permissions for {ctx.service_id}")

    root = ctx.remote_root
    if root is None or not root.is_dir():
        logger.info(f"Sync path does not exist: {root}")
        return False

    issues_before = len(_find_permission_issues(root, PERMISSION_FIX_LIMIT))
    logger.info(f"Permission issues before fix for {root}: {issues_before}")
    if issues_before == 0:
        logger.info(f"No permission issues found for {root}")
        return False

    fixed, failed = _fix_permission_tree(root)
    issues_after = len(_find_permission_issues(root, PERMISSION_FIX_LIMIT))
    logger.info(f"Permission issues after fix for {root}: {issues_after} (fixed {fixed}, failed {failed})")

    return fixed > 0 and failed == 0 and _is_accessible_dir(root)


# ---------------------------------------------------------------------------
# 競合 (conflict)
# ---------------------------------------------------------------------------

def _profile_archives(ctx: RecoveryContext) -> List[Path]:
    if not ctx.profile_name or not ctx.archive_dir.is_dir():
        return []
    pattern = f"*{ctx.profile_name}*"
    return sorted(
        path for path in ctx.archive_dir.iterdir()
        if path.is_file() and fnmatch.fnmatch(path.name, pattern) and path.suffix != ".prf"
    )


def reset_archives(ctx: RecoveryContext) -> bool:
    """アーカイブ破損・デッドロック時にプロファイルのアーカイブを退避して削除"""
    logger.info(f"Attempting selective Unison archive reset for {ctx.service_id}")

    if not ARCHIVE_ERROR_PATTERN.search(ctx.output or ""):
        logger.info("Error doesn't appear to be archive-related, skipping archive reset")
        return False

    if not ctx.profile_name:
        logger.info(f"No profile configured for archive reset: {ctx.service_id}")
        return False

    archives = _profile_archives(ctx)
    logger.info(f"Archive files before reset for {ctx.profile_name}: {len(archives)}")
    if not archives:
        logger.info("No archive files found to reset")
        return False

    backup_dir = ctx.backup_dir / f"archive_backup_{ctx.timestamp()}"
    backup_dir.mkdir(parents=True, exist_ok=True)

    removed = 0
    for archive in archives:
        try:
            shutil.copy2(archive, backup_dir / archive.name)
        except FileNotFoundError:
            continue
        except OSError as e:
            # 退避できないアーカイブは削除しない
            logger.warning(f"Failed to back up archive {archive.name}: {e}")
            continue
        logger.info(f"Backed up archive: {archive.name}")
        if _remove_path(archive):
            removed += 1
            logger.info(f"Removed archive: {archive.name}")

    remaining = _profile_archives(ctx)
    if remaining:
        logger.warning(f"Archive reset verification failed: {len(remaining)} archives still exist")
        return False

    logger.info(f"Archive reset completed: removed {removed} files, backup in {backup_dir}")
    return removed > 0


def _problematic_files(root: Path, now: float) -> List[Tuple[Path, str]]:
    found = []
    for path in _walk_files(root):
        name = path.name
        if _matches_any(name, TEMP_FILE_PATTERNS):
            found.append((path, "temporary"))
        elif fnmatch.fnmatch(name, LOCK_FILE_PATTERN):
            try:
                if now - path.lstat().st_mtime > STALE_LOCK_SECONDS:
                    found.append((path, "stale_lock"))
            except FileNotFoundError:
                continue
        elif INVALID_NAME_CHARS.search(name):
            found.append((path, "invalid_name"))
    return found


def _rename_invalid(path: Path) -> bool:
    target = path.with_name(INVALID_NAME_CHARS.sub("_", path.name))
    if target.exists():
        logger.warning(f"Cannot rename {path.name}: {target.name} already exists")
        return False
    try:
        path.rename(target)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to rename {path}: {e}")
        return False


def clean_problematic_files(ctx: RecoveryContext) -> bool:
    """一時ファイル・古いロックファイルを削除し、不正なファイル名を修正"""
    logger.info(f"Cleaning problematic files for {ctx.service_id}")

    root = ctx.remote_root
    if root is None or not root.is_dir():
        logger.info(f"Sync path does not exist: {root}")
        return False

    now = ctx.clock()
    problems = _problematic_files(root, now)
    logger.info(f"Problematic files before cleanup in {root}: {len(problems)}")

    cleaned = 0
    for path, kind in problems:
        if kind == "invalid_name":
            if _rename_invalid(path):
                cleaned += 1
                logger.info(f"Renamed file with invalid characters: {path.name}")
        elif _remove_path(path):
            cleaned += 1
            label = "stale lock file" if kind == "stale_lock" else "temporary file"
            logger.info(f"Removed {label}: {path.name}")

    remaining = _problematic_files(root, now)
    logger.info(f"Problematic files after cleanup in {root}: {len(remaining)}")

    if cleaned == 0:
        logger.info("No problematic files found to clean")
        return False

    logger.info(f"File cleanup completed: cleaned {cleaned} files")
    return len(remaining) < len(problems)


def backup_conflicts(ctx: RecoveryContext) -> bool:
    """競合ファイルをバックアップディレクトリへ複製"""
    logger.info(f"Creating backup of conflicted files for {ctx.service_id}")

    root = ctx.remote_root
    if root is None or not root.is_dir():
        logger.info(f"Sync path does not exist: {root}")
        return False

    conflicts = [path for path in _walk_files(root) if _matches_any(path.name, CONFLICT_PATTERNS)]
    if not conflicts:
        logger.info("No conflict files found to backup")
        return False

    backup_dir = ctx.backup_dir / f"conflict_backup_{ctx.service_id}_{ctx.timestamp()}"
    backed_up = 0
    for path in conflicts:
        relative = path.relative_to(root)
        target = backup_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Failed to back up conflict file {relative}: {e}")
            continue
        if target.is_file():
            backed_up += 1
            logger.info(f"Backed up conflict file: {relative}")

    logger.info(f"Conflict backup completed: backed up {backed_up} files to {backup_dir}")
    return backed_up > 0


# ---------------------------------------------------------------------------
# 容量 (quota)
# ---------------------------------------------------------------------------

def _space_probe_path(ctx: RecoveryContext) -> Path:
    roots = ctx.roots()
    return roots[0] if roots else ctx.log_dir


def _cleanup_temp_files(ctx: RecoveryContext, now: float) -> Tuple[int, int]:
    removed = freed = 0
    if not ctx.temp_dir.is_dir():
        return removed, freed

    uid = os.getuid()
    for path in ctx.temp_dir.glob("unison*"):
        try:
            info = path.lstat()
        except FileNotFoundError:
            continue
        if info.st_uid != uid or now - info.st_mtime <= 86400:
            continue
        size = info.st_size if path.is_file() else 0
        if _remove_path(path):
            removed += 1
            freed += size
            logger.info(f"Removed temp file: {path.name}")
    return removed, freed


def _cleanup_old_backups(ctx: RecoveryContext, now: float) -> int:
    removed = 0
    if not ctx.backup_dir.is_dir():
        return removed

    for path in ctx.backup_dir.iterdir():
        if not path.is_dir() or "backup" not in path.name:
            continue
        try:
            age = now - path.stat().st_mtime
        except FileNotFoundError:
            continue
        if age > 30 * 86400 and _remove_path(path):
            removed += 1
            logger.info(f"Removed old backup: {path.name}")
    return removed


def cleanup_space(ctx: RecoveryContext) -> bool:
    """古いログ・一時ファイル・古いバックアップを削除して空き容量を確保"""
    logger.info(f"Attempting disk space cleanup for {ctx.service_id}")

    probe = _space_probe_path(ctx)
    free_before = _free_bytes(probe)
    logger.info(f"Free space before cleanup on {probe}: {free_before} bytes")

    now = ctx.clock()
    log_result = LogManager(ctx.log_dir).cleanup_logs(older_than_days=7, min_size_mb=10)
    temp_removed, temp_freed = _cleanup_temp_files(ctx, now)
    backups_removed = _cleanup_old_backups(ctx, now)

    changed = log_result.files_processed + temp_removed + backups_removed
    free_after = _free_bytes(probe)
    logger.info(
        f"Free space after cleanup on {probe}: {free_after} bytes "
        f"(approximately {log_result.bytes_freed + temp_freed} bytes freed)"
    )

    if changed == 0:
        logger.info("Minimal disk space cleanup performed")
        return False

    if free_after < ctx.min_free_bytes:
        logger.warning(f"Disk space verification failed: only {free_after} bytes available")
        return False

    logger.info(f"Disk space verification successful: {free_after} bytes available")
    return True


def compress_logs(ctx: RecoveryContext) -> bool:
    """3日以上前の1MB超のログをgzip圧縮"""
    logger.info("Compressing old log files")
    result = LogManager(ctx.log_dir).compress_logs(older_than_days=3, min_size_mb=1)
    return result.files_processed > 0


# ---------------------------------------------------------------------------
# 部分同期 (partial_sync)
# ---------------------------------------------------------------------------

def extract_failed_paths(output: str, limit: int = FAILED_FILE_LIMIT) -> List[str]:
    """同期出力の失敗行から絶対パスを抽出"""
    paths: List[str] = []
    for line in (output or "").splitlines():
        if not FAILED_FILE_LINE.search(line):
            continue
        for match in ABSOLUTE_PATH.findall(line):
            candidate = match.rstrip(".,:;)")
            if candidate not in paths:
                paths.append(candidate)
            if len(paths) >= limit:
                return paths
    return paths


def analyze_failed_files(ctx: RecoveryContext) -> bool:
    """失敗したファイルの権限と壊れたシンボリックリンクを修正"""
    logger.info(f"Analyzing failed files for {ctx.service_id}")

    failed = extract_failed_paths(ctx.output)
    ctx.failed_paths = failed
    if not failed:
        logger.info("No specific failed files identified in error output")
        return False

    fixed = 0
    for raw in failed:
        path = Path(raw)
        if path.is_symlink() and not path.exists():
            if _remove_path(path):
                fixed += 1
                logger.info(f"Removed broken symlink: {path}")
            continue
        if not path.exists():
            continue
        logger.info(f"Analyzing failed file: {path}")
        if _needs_permission_fix(path) and _grant_owner_access(path):
            fixed += 1
            logger.info(f"Fixed permissions for: {path}")

    if fixed:
        logger.info(f"Failed file analysis completed: fixed {fixed} files")
        return True

    logger.info("No fixable issues found in failed files")
    return False


def _relative_to_roots(ctx: RecoveryContext, raw_paths: Sequence[str]) -> List[str]:
    relative: List[str] = []
    for raw in raw_paths:
        path = Path(raw)
        for root in ctx.roots():
            try:
                rel = path.relative_to(root)
            except ValueError:
                continue
            if str(rel) != "." and str(rel) not in relative:
                relative.append(str(rel))
            break
    return relative


def selective_retry(ctx: RecoveryContext) -> bool:
    """失敗したパスだけを再同期"""
    logger.info(f"Performing selective retry for {ctx.service_id}")

    if ctx.selective_sync is None:
        logger.info(f"Selective sync is not available for {ctx.service_id}")
        return False

    paths = _relative_to_roots(ctx, ctx.failed_paths or extract_failed_paths(ctx.output))
    if not paths:
        logger.info("No failed paths inside the sync roots to retry")
        return False

    timeout = ctx.bounded(ctx.selective_timeout)
    if timeout <= 0:
        logger.warning(f"No time left in the sync cycle for a selective retry of {ctx.service_id}")
        return False

    logger.info(f"Retrying {len(paths)} paths for {ctx.service_id} using profile {ctx.profile_name}")
    succeeded = bool(ctx.selective_sync(paths, timeout))
    if succeeded:
        logger.info(f"Selective retry succeeded for {ctx.service_id}")
    else:
        logger.warning(f"Selective retry failed for {ctx.service_id}")
    return succeeded


# ---------------------------------------------------------------------------
# ネットワーク (network)
# ---------------------------------------------------------------------------

def _network_reachable(ctx: RecoveryContext) -> bool:
    for host in ctx.probe_hosts:
        timeout = ctx.bounded(ctx.connect_timeout)
        if timeout <= 0:
            return False
        if _tcp_reachable(host, ctx.probe_port, timeout):
            return True
    return False


def wait_connectivity(ctx: RecoveryContext) -> bool:
    """ネットワーク接続の回復を待機（サイクル期限を超えては待たない）"""
    max_wait = ctx.bounded(ctx.connectivity_wait_seconds)
    logger.info(f"Waiting for network connectivity (up to {max_wait:.0f}s)")

    waited = 0.0
    while True:
        if _network_reachable(ctx):
            logger.info(f"Network connectivity restored after {waited:.0f}s")
            return True
        if waited >= max_wait:
            break
        logger.info(f"Waiting for network connectivity... ({waited:.0f}s/{max_wait:.0f}s)")
        interval = min(ctx.connectivity_interval, max_wait - waited)
        ctx.sleep(interval)
        waited += interval

    logger.warning(f"Network connectivity not restored within {max_wait:.0f}s")
    return False


def _endpoint_address(endpoint: str) -> Optional[Tuple[str, int]]:
    parsed = urlparse(endpoint if "://" in endpoint else f"https://{endpoint}")
    if not parsed.hostname:
        return None
    port = parsed.port or (80 if parsed.scheme == "http" else 443)
    return parsed.hostname, port


def check_endpoints(ctx: RecoveryContext) -> bool:
    """サービスエンドポイントへの接続を確認"""
    logger.info(f"Testing service endpoints for {ctx.service_id}")

    if not ctx.endpoints:
        logger.info(f"No endpoints configured for {ctx.service_id}")
        return False

    reachable = 0
    for endpoint in ctx.endpoints:
        address = _endpoint_address(endpoint)
        if address is None:
            logger.warning(f"Invalid endpoint: {endpoint}")
            continue
        if _tcp_reachable(address[0], address[1], ctx.connect_timeout):
            reachable += 1
            logger.info(f"Endpoint is accessible: {endpoint}")
        else:
            logger.warning(f"Endpoint is not accessible: {endpoint}")

    return reachable == len(ctx.endpoints)


# ---------------------------------------------------------------------------
# 設定 (configuration)
# ---------------------------------------------------------------------------

def validate_paths(ctx: RecoveryContext) -> bool:
    """同期パスを検証し、欠けているローカル側ルートを作成"""
    logger.info(f"Validating sync paths for {ctx.service_id}")

    created = False
    if ctx.sync_root is not None and not ctx.sync_root.exists():
        logger.info(f"Creating missing sync path: {ctx.sync_root}")
        try:
            ctx.sync_root.mkdir(parents=True, exist_ok=True)
            created = True
        except OSError as e:
            logger.warning(f"Failed to create sync path {ctx.sync_root}: {e}")
            return False

    if ctx.remote_root is not None and not ctx.remote_root.is_dir():
        # クラウドのマウントポイントは作成しない（未マウントの場所へ同期してしまう）
        logger.warning(f"Cloud mount point is not available: {ctx.remote_root}")
        return False

    for root in ctx.roots():
        if not _is_accessible_dir(root):
            logger.warning(f"Sync path has permission issues: {root}")
            return False

    if not created:
        logger.info(f"Sync paths already valid for {ctx.service_id}, nothing to repair")
        return False

    logger.info(f"Path validation successful for {ctx.service_id}")
    return True


def fix_permissions(ctx: RecoveryContext) -> bool:
    """両方の同期ルートの権限を修正"""
    logger.info(f"Fixing path permissions for {ctx.service_id}")

    roots = [root for root in ctx.roots() if root.is_dir()]
    if not roots:
        logger.info(f"Sync paths do not exist for {ctx.service_id}")
        return False

    total_fixed = total_failed = 0
    for root in roots:
        fixed, failed = _fix_permission_tree(root)
        total_fixed += fixed
        total_failed += failed

    if total_fixed == 0:
        logger.info("No permission issues found to fix")
        return False

    verified = total_failed == 0 and all(_is_accessible_dir(root) for root in roots)
    logger.info(f"Permission fix completed: fixed {total_fixed} items (verified: {verified})")
    return verified


def _profile_is_valid(profile_file: Path) -> bool:
    try:
        content = profile_file.read_text(encoding="utf-8")
    except (FileNotFoundError, UnicodeDecodeError):
        return False
    roots = [line for line in content.splitlines() if line.strip().startswith("root")]
    return len(roots) >= 2


def render_basic_profile(ctx: RecoveryContext) -> str:
    """最低限のUnisonプロファイルを生成"""
    lines = [f"# {ctx.service_id} sync profile - auto-generated by drive-sync"]
    lines.extend(f"root = {root}" for root in (ctx.remote_root, ctx.sync_root) if root is not None)
    lines.extend([
        "batch = true",
        "auto = true",
        "times = true",
        "fastcheck = true",
        "prefer = newer",
        "ignore = Name {.DS_Store,Thumbs.db,*.tmp,*.temp}",
    ])
    if ctx.service_id == "icloud":
        lines.append("ignore = Name {.*.icloud}")
    return "\n".join(lines) + "\n"


def _write_atomic(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_path, target)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise


def restore_profile(ctx: RecoveryContext) -> bool:
    """プロファイルをバックアップから復元、なければ基本プロファイルを生成"""
    logger.info(f"Attempting to restore Unison profile for {ctx.service_id}")

    if not ctx.profile_name:
        logger.info(f"No profile configured for {ctx.service_id}")
        return False

    profile_file = ctx.profile_dir / f"{ctx.profile_name}.prf"
    if _profile_is_valid(profile_file):
        logger.info(f"Profile is intact, nothing to restore: {profile_file}")
        return False

    if profile_file.exists():
        saved = ctx.backup_dir / f"profile_backup_{ctx.timestamp()}" / profile_file.name
        saved.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(profile_file, saved)
        logger.info(f"Saved broken profile to {saved}")

    backup_profile = None
    if ctx.profile_backup_dir is not None:
        candidate = ctx.profile_backup_dir / f"{ctx.profile_name}.prf"
        if _profile_is_valid(candidate):
            backup_profile = candidate

    if backup_profile is not None:
        logger.info(f"Restoring profile from backup: {backup_profile}")
        content = backup_profile.read_text(encoding="utf-8")
    else:
        if len(ctx.roots()) < 2:
            logger.warning(f"Cannot create a basic profile without both roots for {ctx.service_id}")
            return False
        logger.info(f"Creating basic profile for {ctx.service_id}")
        content = render_basic_profile(ctx)

    try:
        _write_atomic(profile_file, content)
    except OSError as e:
        logger.warning(f"Failed to write profile {profile_file}: {e}")
        return False

    if _profile_is_valid(profile_file):
        logger.info(f"Profile restoration successful: {ctx.profile_name}")
        return True

    logger.warning(f"Failed to create profile: {ctx.profile_name}")
    return False


# ---------------------------------------------------------------------------
# 一時的エラー (transient)
# ---------------------------------------------------------------------------

def check_system_load(ctx: RecoveryContext) -> bool:
    """システム負荷を確認（負荷が許容範囲ならTrue）"""
    load_1m, _, _ = psutil.getloadavg()
    cpu_count = psutil.cpu_count() or 1
    memory_percent = psutil.virtual_memory().percent
    load_per_cpu = load_1m / cpu_count

    logger.info(
        f"System load for {ctx.service_id}: load {load_1m:.2f} ({load_per_cpu:.2f}/cpu), "
        f"memory {memory_percent:.1f}%"
    )

    if load_per_cpu >= 2.0 or memory_percent >= 90.0:
        logger.warning("System is under heavy load, retry should be delayed")
        return False
    return True


# ---------------------------------------------------------------------------
# レジストリ
# ---------------------------------------------------------------------------

ActionKey = Union[RecoveryActionType, str]


class RecoveryActionRegistry:
    """復旧アクション名からハンドラーへのマッピング"""

    def __init__(self, handlers: Optional[Dict[ActionKey, RecoveryHandler]] = None):
        self._handlers: Dict[str, RecoveryHandler] = {}
        for action, handler in (handlers or {}).items():
            self.register(action, handler)

    @staticmethod
    def _key(action: ActionKey) -> str:
        return action.value if isinstance(action, RecoveryActionType) else str(action)

    def register(self, action: ActionKey, handler: RecoveryHandler) -> None:
        """ハンドラーを登録（既存は置き換え）"""
        self._handlers[self._key(action)] = handler
        logger.debug(f"Recovery action registered: {self._key(action)}")

    def get(self, action: ActionKey) -> Optional[RecoveryHandler]:
        return self._handlers.get(self._key(action))

    def __contains__(self, action: ActionKey) -> bool:
        return self._key(action) in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)


DEFAULT_ACTIONS: Dict[RecoveryActionType, RecoveryHandler] = {
    RecoveryActionType.REFRESH_CREDENTIALS: refresh_credentials,
    RecoveryActionType.VALIDATE_PERMISSIONS: validate_permissions,
    RecoveryActionType.RESET_ARCHIVES: reset_archives,
    RecoveryActionType.CLEAN_PROBLEMATIC_FILES: clean_problematic_files,
    RecoveryActionType.BACKUP_CONFLICTS: backup_conflicts,
    RecoveryActionType.CLEANUP_SPACE: cleanup_space,
    RecoveryActionType.COMPRESS_LOGS: compress_logs,
    RecoveryActionType.ANALYZE_FAILED_FILES: analyze_failed_files,
    RecoveryActionType.SELECTIVE_RETRY: selective_retry,
    RecoveryActionType.WAIT_CONNECTIVITY: wait_connectivity,
    RecoveryActionType.TEST_ENDPOINTS: check_endpoints,
    RecoveryActionType.VALIDATE_PATHS: validate_paths,
    RecoveryActionType.FIX_PERMISSIONS: fix_permissions,
    RecoveryActionType.RESTORE_PROFILE: restore_profile,
    RecoveryActionType.CHECK_SYSTEM_LOAD: check_system_load,
}


def default_action_registry() -> RecoveryActionRegistry:
    """標準の復旧アクションを登録したレジストリを作成"""
    return RecoveryActionRegistry(DEFAULT_ACTIONS)
