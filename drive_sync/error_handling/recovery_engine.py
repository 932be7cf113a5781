"""
Drive Sync System - Recovery Engine
エラーカテゴリに対応する復旧アクションチェーンの実行
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .error_classifier import ErrorCategory
from .error_policy import SUPPORTIVE_ACTIONS, ErrorPolicy, RecoveryActionType, get_policy
from .recovery_actions import RecoveryActionRegistry, RecoveryContext, default_action_registry

logger = logging.getLogger(__name__)


class NextAction(Enum):
    """復旧後に推奨される次の手順"""
    RETRY_IMMEDIATELY = "retry_immediately"        # 即時再試行
    RETRY_WITH_DELAY = "retry_with_delay"          # 待機後に再試行
    MANUAL_INTERVENTION = "manual_intervention"    # 手動介入


@dataclass
class RecoveryActionResult:
    """個々の復旧アクションの結果"""
    action: str
    succeeded: bool
    supportive: bool
    duration_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return asdict(self)


@dataclass
class RecoveryOutcome:
    """復旧結果"""
    service_id: str
    error_category: Optional[ErrorCategory]
    attempted: bool
    succeeded: bool
    next_action: NextAction
    actions: List[RecoveryActionResult] = field(default_factory=list)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "service_id": self.service_id,
            "error_category": self.error_category.value if self.error_category else None,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "next_action": self.next_action.value,
            "actions": [result.to_dict() for result in self.actions],
            "timestamp": self.timestamp,
        }


class RecoveryEngine:
    """復旧エンジン

    ポリシーのアクションチェーンを順に実行する。解決系アクションが1つ成功すると
    残りの解決系アクションは実行しない。補助アクションは結果にかかわらず常に実行する。
    アクションの結果がサーキットブレーカーに報告されることはない。
    """

    def __init__(self,
                 registry: Optional[RecoveryActionRegistry] = None,
                 policy_lookup: Callable[[Optional[ErrorCategory]], ErrorPolicy] = get_policy,
                 max_history: int = 1000):
        """
        初期化

        Args:
            registry: 復旧アクションのレジストリ
            policy_lookup: エラーカテゴリからポリシーを引く関数
            max_history: 保持する復旧履歴の上限
        """
        self.registry = registry or default_action_registry()
        self.policy_lookup = policy_lookup

        # 復旧履歴
        self.recovery_history: List[RecoveryOutcome] = []
        self.max_history = max_history

        # 統計情報
        self.recovery_stats = self._empty_stats()

        logger.info("RecoveryEngine initialized")

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_attempts": 0,
            "successful_recoveries": 0,
            "failed_recoveries": 0,
            "not_attempted": 0,
            "by_category": {},
            "by_action": {},
        }

    def attempt_recovery(self,
                         service_id: str,
                         error_category: Optional[ErrorCategory],
                         context: Optional[RecoveryContext] = None) -> RecoveryOutcome:
        """
        復旧を試行

        Args:
            service_id: サービスID
            error_category: 分類済みのエラーカテゴリ
            context: 復旧アクションに渡すコンテキスト

        Returns:
            復旧結果。例外は送出せず、アクションの失敗は結果に反映する
        """
        chain = tuple(self.policy_lookup(error_category).recovery_actions)
        category_name = error_category.value if error_category else "unknown"

        if not chain:
            logger.warning(f"No recovery actions defined for error type: {category_name}")
            return self._finish(RecoveryOutcome(
                service_id=service_id,
                error_category=error_category,
                attempted=False,
                succeeded=False,
                next_action=NextAction.MANUAL_INTERVENTION,
            ))

        if context is None:
            context = RecoveryContext(service_id=service_id, error_category=error_category)

        logger.info(f"Attempting recovery for {service_id} with error type: {category_name}")

        results: List[RecoveryActionResult] = []
        resolved = False
        cut_short = False

        for action in chain:
            if context.deadline_expired:
                logger.warning(f"Sync cycle deadline reached, stopping recovery for {service_id} "
                               f"before {action.value}")
                cut_short = True
                break

            supportive = action in SUPPORTIVE_ACTIONS
            if resolved and not supportive:
                logger.debug(f"Skipping {action.value}: {service_id} already recovered")
                continue

            handler = self.registry.get(action)
            if handler is None:
                logger.warning(f"Unknown recovery action: {action.value}")
                continue

            result = self._run_action(action, handler, context, supportive)
            results.append(result)

            if result.succeeded and not supportive:
                logger.info(f"Recovery action {action.value} succeeded for {service_id}")
                resolved = True

        attempted = bool(results)
        if resolved:
            next_action = NextAction.RETRY_IMMEDIATELY
        elif attempted or cut_short:
            # 期限切れで打ち切った場合は手動介入ではなく、呼び出し側の期限判定に任せる
            next_action = NextAction.RETRY_WITH_DELAY
        else:
            next_action = NextAction.MANUAL_INTERVENTION

        if attempted and not resolved:
            logger.warning(f"All recovery actions failed for {service_id}")

        return self._finish(RecoveryOutcome(
            service_id=service_id,
            error_category=error_category,
            attempted=attempted,
            succeeded=resolved,
            next_action=next_action,
            actions=results,
        ))

    def _run_action(self,
                    action: RecoveryActionType,
                    handler: Callable[[RecoveryContext], bool],
                    context: RecoveryContext,
                    supportive: bool) -> RecoveryActionResult:
        start_time = time.time()
        logger.info(f"Executing recovery action: {action.value}")

        error = None
        try:
            succeeded = bool(handler(context))
        except Exception as e:
            logger.error(f"Recovery action {action.value} raised: {e}")
            succeeded = False
            error = str(e)

        if not succeeded and error is None:
            logger.info(f"Recovery action {action.value} failed")

        return RecoveryActionResult(
            action=action.value,
            succeeded=succeeded,
            supportive=supportive,
            duration_ms=(time.time() - start_time) * 1000,
            error=error,
        )

    def _finish(self, outcome: RecoveryOutcome) -> RecoveryOutcome:
        """復旧結果を記録"""
        self.recovery_history.append(outcome)
        if len(self.recovery_history) > self.max_history:
            self.recovery_history = self.recovery_history[-self.max_history:]

        stats = self.recovery_stats
        category = outcome.error_category.value if outcome.error_category else "unknown"
        stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

        if not outcome.attempted:
            stats["not_attempted"] += 1
        else:
            stats["total_attempts"] += 1
            if outcome.succeeded:
                stats["successful_recoveries"] += 1
            else:
                stats["failed_recoveries"] += 1

        for result in outcome.actions:
            action_stats = stats["by_action"].setdefault(result.action, {"succeeded": 0, "failed": 0})
            action_stats["succeeded" if result.succeeded else "failed"] += 1

        logger.info(
            f"Recovery result for {outcome.service_id}: attempted={outcome.attempted}, "
            f"succeeded={outcome.succeeded}, next={outcome.next_action.value}"
        )
        return outcome

    def get_recovery_statistics(self) -> Dict[str, Any]:
        """復旧統計を取得"""
        stats = self.recovery_stats
        success_rate = 0.0
        if stats["total_attempts"] > 0:
            success_rate = (stats["successful_recoveries"] / stats["total_attempts"]) * 100

        return {
            **stats,
            "success_rate_percent": round(success_rate, 2),
            "recent_recoveries": [outcome.to_dict() for outcome in self.recovery_history[-10:]],
        }

    def get_recent_failures(self, hours: int = 24) -> List[RecoveryOutcome]:
        """最近の失敗した復旧を取得"""
        cutoff_time = datetime.now() - timedelta(hours=hours)
        return [
            outcome for outcome in self.recovery_history
            if not outcome.succeeded and datetime.fromisoformat(outcome.timestamp) >= cutoff_time
        ]

    def clear_recovery_history(self) -> None:
        """復旧履歴をクリア"""
        self.recovery_history.clear()
        self.recovery_stats = self._empty_stats()
        logger.info("Recovery history and statistics cleared")
