"""
Drive Sync System - Error Policy Table
エラーカテゴリごとの閾値・リセット時間・復旧アクションチェーン
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .error_classifier import ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)


class RecoveryActionType(Enum):
    """復旧アクション"""
    REFRESH_CREDENTIALS = "refresh_credentials"          # 認証情報の再取得
    VALIDATE_PERMISSIONS = "validate_permissions"        # 権限の検証と修正
    RESET_ARCHIVES = "reset_archives"                    # 同期アーカイブのリセット
    CLEAN_PROBLEMATIC_FILES = "clean_problematic_files"  # 問題ファイルの除去
    BACKUP_CONFLICTS = "backup_conflicts"                # 競合ファイルの退避
    CLEANUP_SPACE = "cleanup_space"                      # ディスク容量の確保
    COMPRESS_LOGS = "compress_logs"                      # 古いログの圧縮
    ANALYZE_FAILED_FILES = "analyze_failed_files"        # 失敗ファイルの解析と修正
    SELECTIVE_RETRY = "selective_retry"                  # 失敗ファイルのみ再同期
    WAIT_CONNECTIVITY = "wait_connectivity"              # ネットワーク回復待ち
    TEST_ENDPOINTS = "test_endpoints"                    # サービスエンドポイント確認
    VALIDATE_PATHS = "validate_paths"                    # 同期パスの検証
    FIX_PERMISSIONS = "fix_permissions"                  # パス権限の修正
    RESTORE_PROFILE = "restore_profile"                  # 同期プロファイルの復元
    CHECK_SYSTEM_LOAD = "check_system_load"              # システム負荷の確認


# 問題を解決するのではなく緩和するアクション。チェーンを打ち切らない
SUPPORTIVE_ACTIONS: FrozenSet[RecoveryActionType] = frozenset({
    RecoveryActionType.BACKUP_CONFLICTS,
    RecoveryActionType.COMPRESS_LOGS,
    RecoveryActionType.CHECK_SYSTEM_LOAD,
})


@dataclass(frozen=True)
class ErrorPolicy:
    """エラーカテゴリのポリシー"""
    failure_threshold: int                                # OPENに移行する連続失敗数
    reset_timeout: int                                    # OPEN状態の持続時間（秒）
    recovery_actions: Tuple[RecoveryActionType, ...]      # 実行順の復旧アクション
    severity: ErrorSeverity
    is_transient: bool
    retry_delay_multiplier: float = 1.0                   # 再試行遅延の基準値に掛ける係数

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "recovery_actions": [action.value for action in self.recovery_actions],
            "severity": self.severity.value,
            "is_transient": self.is_transient,
            "retry_delay_multiplier": self.retry_delay_multiplier,
        }


A = RecoveryActionType

ERROR_POLICIES: Dict[ErrorCategory, ErrorPolicy] = {
    ErrorCategory.AUTHENTICATION: ErrorPolicy(
        failure_threshold=3,
        reset_timeout=3600,      # 1時間
        recovery_actions=(A.REFRESH_CREDENTIALS, A.VALIDATE_PERMISSIONS),
        severity=ErrorSeverity.HIGH,
        is_transient=False,
        retry_delay_multiplier=2.0,
    ),
    ErrorCategory.CONFLICT: ErrorPolicy(
        failure_threshold=4,
        reset_timeout=1800,      # 30分
        recovery_actions=(A.RESET_ARCHIVES, A.CLEAN_PROBLEMATIC_FILES, A.BACKUP_CONFLICTS),
        severity=ErrorSeverity.HIGH,
        is_transient=False,
        retry_delay_multiplier=1.5,
    ),
    ErrorCategory.QUOTA: ErrorPolicy(
        failure_threshold=2,
        reset_timeout=7200,      # 2時間
        recovery_actions=(A.CLEANUP_SPACE, A.COMPRESS_LOGS),
        severity=ErrorSeverity.HIGH,
        is_transient=False,
        retry_delay_multiplier=2.0,
    ),
    ErrorCategory.NETWORK: ErrorPolicy(
        failure_threshold=6,
        reset_timeout=900,       # 15分
        recovery_actions=(A.WAIT_CONNECTIVITY, A.TEST_ENDPOINTS),
        severity=ErrorSeverity.MEDIUM,
        is_transient=True,
    ),
    ErrorCategory.CONFIGURATION: ErrorPolicy(
        failure_threshold=3,
        reset_timeout=3600,      # 1時間
        recovery_actions=(A.VALIDATE_PATHS, A.FIX_PERMISSIONS, A.RESTORE_PROFILE),
        severity=ErrorSeverity.HIGH,
        is_transient=False,
        retry_delay_multiplier=2.0,
    ),
    ErrorCategory.TRANSIENT: ErrorPolicy(
        failure_threshold=8,
        reset_timeout=600,       # 10分
        recovery_actions=(A.CHECK_SYSTEM_LOAD,),
        severity=ErrorSeverity.LOW,
        is_transient=True,
        retry_delay_multiplier=0.5,
    ),
    ErrorCategory.PERMANENT: ErrorPolicy(
        failure_threshold=1,
        reset_timeout=86400,     # 24時間
        recovery_actions=(),
        severity=ErrorSeverity.CRITICAL,
        is_transient=False,
        retry_delay_multiplier=2.0,
    ),
    ErrorCategory.PARTIAL_SYNC: ErrorPolicy(
        failure_threshold=5,
        reset_timeout=1200,      # 20分
        recovery_actions=(A.ANALYZE_FAILED_FILES, A.SELECTIVE_RETRY),
        severity=ErrorSeverity.MEDIUM,
        is_transient=True,
        retry_delay_multiplier=0.5,
    ),
}

# 未知のカテゴリ（手動リセット直後など）に使う保守的な既定値
DEFAULT_POLICY = ErrorPolicy(
    failure_threshold=5,
    reset_timeout=1800,
    recovery_actions=(),
    severity=ErrorSeverity.MEDIUM,
    is_transient=False,
)

_missing = set(ErrorCategory) - set(ERROR_POLICIES)
if _missing:
    raise RuntimeError(
        f"Error policy table is missing categories: {sorted(c.value for c in _missing)}"
    )


def get_policy(category: Optional[ErrorCategory]) -> ErrorPolicy:
    """カテゴリのポリシーを取得（例外を送出しない）"""
    policy = ERROR_POLICIES.get(category) if category is not None else None
    if policy is None:
        logger.debug(f"No error policy for {category!r}, using default policy")
        return DEFAULT_POLICY
    return policy


def get_policy_table() -> Dict[str, Dict[str, Any]]:
    """表示用のポリシー一覧を取得"""
    return {category.value: policy.to_dict() for category, policy in ERROR_POLICIES.items()}
