"""
Drive Sync System - Error Policy Tests
エラーポリシーテーブルのテスト
"""

import pytest

from drive_sync.error_handling.error_classifier import ErrorCategory, ErrorSeverity
from drive_sync.error_handling.error_policy import (
    DEFAULT_POLICY,
    ERROR_POLICIES,
    SUPPORTIVE_ACTIONS,
    ErrorPolicy,
    RecoveryActionType,
    get_policy,
    get_policy_table
)
from drive_sync.error_handling.recovery_actions import default_action_registry


class TestErrorPolicyTable:
    """ポリシーテーブルのテストクラス"""

    def test_every_category_has_policy(self):
        """全カテゴリにポリシーが定義されている"""
        assert set(ERROR_POLICIES) == set(ErrorCategory)

    @pytest.mark.parametrize("category, threshold, reset_timeout", [
        (ErrorCategory.AUTHENTICATION, 3, 3600),
        (ErrorCategory.CONFLICT, 4, 1800),
        (ErrorCategory.QUOTA, 2, 7200),
        (ErrorCategory.NETWORK, 6, 900),
        (ErrorCategory.CONFIGURATION, 3, 3600),
        (ErrorCategory.TRANSIENT, 8, 600),
        (ErrorCategory.PERMANENT, 1, 86400),
        (ErrorCategory.PARTIAL_SYNC, 5, 1200),
    ])
    def test_thresholds_and_timeouts(self, category, threshold, reset_timeout):
        """カテゴリごとの閾値とリセット時間"""
        policy = get_policy(category)
        assert policy.failure_threshold == threshold
        assert policy.reset_timeout == reset_timeout

    def test_recovery_chains(self):
        """復旧アクションチェーンの順序"""
        assert get_policy(ErrorCategory.AUTHENTICATION).recovery_actions == (
            RecoveryActionType.REFRESH_CREDENTIALS,
            RecoveryActionType.VALIDATE_PERMISSIONS,
        )
        assert get_policy(ErrorCategory.NETWORK).recovery_actions == (
            RecoveryActionType.WAIT_CONNECTIVITY,
            RecoveryActionType.TEST_ENDPOINTS,
        )
        assert get_policy(ErrorCategory.PARTIAL_SYNC).recovery_actions == (
            RecoveryActionType.ANALYZE_FAILED_FILES,
            RecoveryActionType.SELECTIVE_RETRY,
        )

    def test_permanent_has_no_recovery(self):
        """恒久的エラーは手動介入のみ"""
        policy = get_policy(ErrorCategory.PERMANENT)
        assert policy.recovery_actions == ()
        assert policy.severity == ErrorSeverity.CRITICAL

    def test_transient_categories(self):
        """一時的と見なすカテゴリ"""
        transient = {category for category, policy in ERROR_POLICIES.items() if policy.is_transient}
        assert transient == {ErrorCategory.NETWORK, ErrorCategory.TRANSIENT, ErrorCategory.PARTIAL_SYNC}

    def test_missing_category_uses_default_policy(self):
        """カテゴリ不明時は既定ポリシー"""
        assert get_policy(None) is DEFAULT_POLICY
        assert DEFAULT_POLICY.failure_threshold == 5
        assert DEFAULT_POLICY.reset_timeout == 1800

    def test_every_action_has_handler(self):
        """テーブル上の全アクションに実装がある"""
        registry = default_action_registry()
        for policy in ERROR_POLICIES.values():
            for action in policy.recovery_actions:
                assert action in registry, f"{action.value} の実装がありません"

    def test_supportive_actions(self):
        """補助アクションの集合"""
        assert SUPPORTIVE_ACTIONS == {
            RecoveryActionType.BACKUP_CONFLICTS,
            RecoveryActionType.COMPRESS_LOGS,
            RecoveryActionType.CHECK_SYSTEM_LOAD,
        }

    def test_policy_validation(self):
        """不正なポリシーは作成できない"""
        with pytest.raises(ValueError):
            ErrorPolicy(failure_threshold=0, reset_timeout=60, recovery_actions=(),
                        severity=ErrorSeverity.LOW, is_transient=True)
        with pytest.raises(ValueError):
            ErrorPolicy(failure_threshold=1, reset_timeout=-1, recovery_actions=(),
                        severity=ErrorSeverity.LOW, is_transient=True)

    def test_policy_table_is_serializable(self):
        """表示用テーブルは文字列キー・文字列値"""
        table = get_policy_table()
        assert set(table) == {category.value for category in ErrorCategory}
        assert table["quota"]["recovery_actions"] == ["cleanup_space", "compress_logs"]
        assert table["permanent"]["severity"] == "critical"
