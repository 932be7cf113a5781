"""
Drive Sync System - Recovery Engine Tests
復旧エンジンのテスト
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from drive_sync.error_handling.error_classifier import ErrorCategory
from drive_sync.error_handling.error_policy import RecoveryActionType
from drive_sync.error_handling.recovery_actions import RecoveryActionRegistry, RecoveryContext
from drive_sync.error_handling.recovery_engine import NextAction, RecoveryEngine

SERVICE = "google_drive"


def _registry(**results):
    """全アクションをMockで登録したレジストリ（指定分は戻り値を設定）"""
    handlers = {}
    for action in RecoveryActionType:
        handler = Mock(name=action.value, return_value=results.get(action.value, False))
        handlers[action] = handler
    return RecoveryActionRegistry(handlers), handlers


class TestRecoveryEngine:
    """RecoveryEngineのテストクラス"""

    def test_empty_chain_fails_fast(self):
        """アクションの無いカテゴリは副作用なしで手動介入"""
        registry, handlers = _registry()
        engine = RecoveryEngine(registry)

        outcome = engine.attempt_recovery(SERVICE, ErrorCategory.PERMANENT)

        assert outcome.attempted is False
        assert outcome.succeeded is False
        assert outcome.next_action == NextAction.MANUAL_INTERVENTION
        assert outcome.actions == []
        for handler in handlers.values():
            handler.assert_not_called()

    def test_unknown_category_uses_default_policy(self):
        """カテゴリ不明は既定ポリシー（アクションなし）"""
        registry, _ = _registry()
        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, None)

        assert outcome.next_action == NextAction.MANUAL_INTERVENTION

    def test_successful_action_stops_resolving_chain(self):
        """解決系アクションの成功で残りの解決系はスキップ、補助アクションは実行"""
        registry, handlers = _registry(reset_archives=True)
        engine = RecoveryEngine(registry)

        outcome = engine.attempt_recovery(SERVICE, ErrorCategory.CONFLICT)

        assert outcome.attempted is True
        assert outcome.succeeded is True
        assert outcome.next_action == NextAction.RETRY_IMMEDIATELY
        handlers[RecoveryActionType.RESET_ARCHIVES].assert_called_once()
        handlers[RecoveryActionType.CLEAN_PROBLEMATIC_FILES].assert_not_called()
        handlers[RecoveryActionType.BACKUP_CONFLICTS].assert_called_once()
        assert [a.action for a in outcome.actions] == ["reset_archives", "backup_conflicts"]

    def test_actions_run_in_policy_order(self):
        """すべて失敗した場合はチェーン全体を順に実行"""
        calls = []
        registry = RecoveryActionRegistry({
            RecoveryActionType.VALIDATE_PATHS: lambda ctx: calls.append("validate_paths") and False,
            RecoveryActionType.FIX_PERMISSIONS: lambda ctx: calls.append("fix_permissions") and False,
            RecoveryActionType.RESTORE_PROFILE: lambda ctx: calls.append("restore_profile") and False,
        })

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.CONFIGURATION)

        assert calls == ["validate_paths", "fix_permissions", "restore_profile"]
        assert outcome.attempted is True
        assert outcome.succeeded is False
        assert outcome.next_action == NextAction.RETRY_WITH_DELAY

    def test_supportive_success_is_not_recovery(self):
        """補助アクションだけの成功は復旧とは見なさない"""
        registry, _ = _registry(check_system_load=True)

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.TRANSIENT)

        assert outcome.attempted is True
        assert outcome.succeeded is False
        assert outcome.next_action == NextAction.RETRY_WITH_DELAY
        assert outcome.actions[0].supportive is True

    def test_action_exception_is_recorded(self):
        """アクションの例外は記録して次のアクションへ進む"""
        registry, handlers = _registry(refresh_credentials=True)
        handlers[RecoveryActionType.REFRESH_CREDENTIALS].side_effect = RuntimeError("keychain locked")

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.AUTHENTICATION)

        first, second = outcome.actions
        assert first.succeeded is False
        assert first.error == "keychain locked"
        assert second.action == "validate_permissions"
        handlers[RecoveryActionType.VALIDATE_PERMISSIONS].assert_called_once()

    def test_unregistered_actions_are_skipped(self):
        """未登録のアクションはスキップ"""
        registry = RecoveryActionRegistry({RecoveryActionType.TEST_ENDPOINTS: lambda ctx: True})

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.NETWORK)

        assert [a.action for a in outcome.actions] == ["test_endpoints"]
        assert outcome.next_action == NextAction.RETRY_IMMEDIATELY

    def test_no_registered_action_means_manual(self):
        """チェーンのアクションが1つも登録されていなければ手動介入"""
        outcome = RecoveryEngine(RecoveryActionRegistry()).attempt_recovery(SERVICE, ErrorCategory.QUOTA)

        assert outcome.attempted is False
        assert outcome.next_action == NextAction.MANUAL_INTERVENTION

    def test_context_is_passed_to_actions(self):
        """アクションには渡したコンテキストが届く"""
        registry, handlers = _registry()
        context = RecoveryContext(service_id=SERVICE, error_category=ErrorCategory.QUOTA, output="disk full")

        RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.QUOTA, context)

        handlers[RecoveryActionType.CLEANUP_SPACE].assert_called_once_with(context)

    def test_default_context_when_none_given(self):
        registry, handlers = _registry()

        RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.QUOTA)

        context = handlers[RecoveryActionType.CLEANUP_SPACE].call_args[0][0]
        assert isinstance(context, RecoveryContext)
        assert context.service_id == SERVICE
        assert context.error_category == ErrorCategory.QUOTA

    def test_deadline_stops_remaining_actions(self):
        """サイクル期限を過ぎたら残りのアクションは実行しない"""
        now = [1000.0]
        registry, handlers = _registry()
        handlers[RecoveryActionType.WAIT_CONNECTIVITY].side_effect = lambda ctx: now.__setitem__(0, 1100.0)
        context = RecoveryContext(service_id=SERVICE, clock=lambda: now[0])
        context.limit_to(60)

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.NETWORK, context)

        handlers[RecoveryActionType.TEST_ENDPOINTS].assert_not_called()
        assert [r.action for r in outcome.actions] == ["wait_connectivity"]
        assert outcome.succeeded is False
        # 手動介入ではなく、期限の判定は呼び出し側に任せる
        assert outcome.next_action == NextAction.RETRY_WITH_DELAY

    def test_expired_deadline_runs_nothing(self):
        registry, handlers = _registry()
        context = RecoveryContext(service_id=SERVICE, clock=lambda: 1000.0)
        context.limit_to(0)

        outcome = RecoveryEngine(registry).attempt_recovery(SERVICE, ErrorCategory.QUOTA, context)

        assert outcome.attempted is False
        assert outcome.next_action == NextAction.RETRY_WITH_DELAY
        for handler in handlers.values():
            handler.assert_not_called()


class TestRecoveryStatistics:
    """復旧統計のテストクラス"""

    @pytest.fixture
    def engine(self):
        registry, _ = _registry(reset_archives=True)
        return RecoveryEngine(registry, max_history=3)

    def test_statistics(self, engine):
        engine.attempt_recovery(SERVICE, ErrorCategory.CONFLICT)
        engine.attempt_recovery(SERVICE, ErrorCategory.QUOTA)
        engine.attempt_recovery(SERVICE, ErrorCategory.PERMANENT)

        stats = engine.get_recovery_statistics()

        assert stats["total_attempts"] == 2
        assert stats["successful_recoveries"] == 1
        assert stats["failed_recoveries"] == 1
        assert stats["not_attempted"] == 1
        assert stats["success_rate_percent"] == 50.0
        assert stats["by_category"] == {"conflict": 1, "quota": 1, "permanent": 1}
        assert stats["by_action"]["reset_archives"] == {"succeeded": 1, "failed": 0}
        assert len(stats["recent_recoveries"]) == 3

    def test_history_is_bounded(self, engine):
        for _ in range(5):
            engine.attempt_recovery(SERVICE, ErrorCategory.PERMANENT)
        assert len(engine.recovery_history) == 3

    def test_recent_failures(self, engine):
        engine.attempt_recovery(SERVICE, ErrorCategory.CONFLICT)
        engine.attempt_recovery(SERVICE, ErrorCategory.QUOTA)
        old = engine.attempt_recovery(SERVICE, ErrorCategory.PERMANENT)
        old.timestamp = (datetime.now() - timedelta(hours=48)).isoformat()

        failures = engine.get_recent_failures(hours=24)

        assert [f.error_category for f in failures] == [ErrorCategory.QUOTA]

    def test_clear_history(self, engine):
        engine.attempt_recovery(SERVICE, ErrorCategory.CONFLICT)
        engine.clear_recovery_history()

        assert engine.recovery_history == []
        assert engine.get_recovery_statistics()["total_attempts"] == 0

    def test_outcome_to_dict(self, engine):
        outcome = engine.attempt_recovery(SERVICE, ErrorCategory.CONFLICT)
        data = outcome.to_dict()

        assert data["error_category"] == "conflict"
        assert data["next_action"] == "retry_immediately"
        assert data["actions"][0]["action"] == "reset_archives"
