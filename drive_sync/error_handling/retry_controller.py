"""
Drive Sync System - Retry Controller
1サービス1サイクルの同期実行（サーキット確認 → 実行 → 分類 → 復旧 → 再試行）
"""

import logging
import random
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import StoreUnavailableError
from ..sync.sync_history import SyncHistory, SyncHistoryEntry
from ..sync.sync_runner import SyncResult
from .circuit_breaker import CircuitBreaker
from .error_classifier import ErrorCategory, ErrorClassifier
from .error_policy import ErrorPolicy, get_policy
from .recovery_actions import RecoveryContext
from .recovery_engine import NextAction, RecoveryEngine

logger = logging.getLogger(__name__)

SyncExecutor = Callable[[str, float], SyncResult]
ContextFactory = Callable[[str, ErrorCategory, SyncResult], RecoveryContext]
# (service_id, 残り時間 or None) -> クラウド側が同期可能か
ReadinessCheck = Callable[[str, Optional[float]], bool]

MOUNT_UNAVAILABLE_RULE = "mount_unavailable"
MOUNT_UNAVAILABLE_EXIT_STATUS = 1


class CycleOutcome(Enum):
    """同期サイクルの最終結果"""
    SUCCESS = "success"
    SKIPPED_CIRCUIT_OPEN = "skipped_circuit_open"            # 想定内の保護（エラーではない）
    SKIPPED_IN_PROGRESS = "skipped_in_progress"              # 別プロセスで実行中
    FAILED_MANUAL = "failed_manual"                          # 手動介入が必要
    FAILED_EXHAUSTED = "failed_exhausted"                    # 再試行上限に到達
    FAILED_TIMEOUT = "failed_timeout"                        # サイクルの期限切れ
    FAILED_STORE_UNAVAILABLE = "failed_store_unavailable"    # 状態ストアが書き込み不能

    @property
    def requires_attention(self) -> bool:
        """オペレーターの対応が必要か"""
        return self.value.startswith("failed_")

    @property
    def is_skip(self) -> bool:
        return self.value.startswith("skipped_")


@dataclass
class RetryConfig:
    """再試行設定"""
    max_retries: int = 3
    base_timeout: float = 300.0
    extended_timeout_multiplier: float = 6.0    # 初回同期・直近のタイムアウト後
    retry_timeout_multiplier: float = 3.0       # 2回目以降の試行
    base_retry_delay: float = 30.0
    max_retry_delay: float = 300.0
    jitter_min: float = 1.0
    jitter_max: float = 10.0
    recent_timeout_window: int = 10
    cycle_deadline: Optional[float] = None      # サイクル全体の上限（秒）

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.jitter_min > self.jitter_max:
            raise ValueError("jitter_min must not exceed jitter_max")

    def get_attempt_timeout(self, attempt: int, first_sync: bool, recent_timeouts: int) -> float:
        """試行ごとの実行タイムアウトを計算"""
        if first_sync or recent_timeouts > 0:
            return self.base_timeout * self.extended_timeout_multiplier
        if attempt > 1:
            return self.base_timeout * self.retry_timeout_multiplier
        return self.base_timeout

    def get_retry_delay(self, attempt: int, policy: ErrorPolicy, rng: random.Random) -> float:
        """再試行までの待機時間を計算（カテゴリ係数 × 試行回数 + ジッター、上限あり）"""
        base_delay = self.base_retry_delay * policy.retry_delay_multiplier
        delay = base_delay * attempt + rng.uniform(self.jitter_min, self.jitter_max)
        return min(delay, self.max_retry_delay)


@dataclass
class AttemptRecord:
    """1回の同期試行の記録"""
    attempt: int
    exit_status: int
    duration: float
    timeout: float
    timed_out: bool = False
    category: Optional[str] = None
    rule: Optional[str] = None
    recovery: Optional[Dict[str, Any]] = None
    next_action: Optional[str] = None
    delay: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return asdict(self)


@dataclass
class CycleResult:
    """同期サイクルの結果"""
    service_id: str
    outcome: CycleOutcome
    attempts: List[AttemptRecord] = field(default_factory=list)
    circuit_state: Optional[str] = None
    message: str = ""
    duration: float = 0.0
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def requires_attention(self) -> bool:
        return self.outcome.requires_attention

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "service_id": self.service_id,
            "outcome": self.outcome.value,
            "requires_attention": self.requires_attention,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "circuit_state": self.circuit_state,
            "message": self.message,
            "duration": round(self.duration, 3),
            "started_at": self.started_at,
        }


class _Cycle:
    """1サイクル分の実行状態"""

    def __init__(self, service_id: str, start: float, deadline: Optional[float]):
        self.service_id = service_id
        self.start = start
        self.deadline = deadline
        self.attempts: List[AttemptRecord] = []


class RetryController:
    """同期サイクルの再試行制御

    サーキットブレーカーに報告するのは同期そのものの成否だけで、
    復旧アクションの結果は次の手順の判断にのみ使う。
    """

    def __init__(self,
                 circuit_breaker: CircuitBreaker,
                 classifier: ErrorClassifier,
                 recovery_engine: RecoveryEngine,
                 sync_executor: SyncExecutor,
                 context_factory: Optional[ContextFactory] = None,
                 config: Optional[RetryConfig] = None,
                 history: Optional[SyncHistory] = None,
                 event_logger=None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
                 policy_lookup: Callable[[Optional[ErrorCategory]], ErrorPolicy] = get_policy,
                 readiness_check: Optional[ReadinessCheck] = None):
        """
        初期化

        Args:
            circuit_breaker: サーキットブレーカー
            classifier: エラー分類器
            recovery_engine: 復旧エンジン
            sync_executor: (service_id, timeout) -> SyncResult を返す同期実行関数
            context_factory: 復旧コンテキストを作る関数
            config: 再試行設定
            history: 同期履歴（適応タイムアウトに使用）
            event_logger: 構造化イベントロガー
            sleep: 待機関数
            clock: 単調増加する時刻（秒）を返す関数
            rng: ジッター用の乱数生成器
            policy_lookup: エラーカテゴリからポリシーを引く関数
            readiness_check: 各試行の前にクラウドのマウントを待つ関数
        """
        self.circuit_breaker = circuit_breaker
        self.classifier = classifier
        self.recovery_engine = recovery_engine
        self.sync_executor = sync_executor
        self.context_factory = context_factory or self._default_context
        self.config = config or RetryConfig()
        self.history = history
        self.event_logger = event_logger
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()
        self.policy_lookup = policy_lookup
        self.readiness_check = readiness_check

    @staticmethod
    def _default_context(service_id: str, category: ErrorCategory, result: SyncResult) -> RecoveryContext:
        return RecoveryContext(
            service_id=service_id,
            error_category=category,
            exit_status=result.exit_status,
            output=result.output,
        )

    def run_cycle(self, service_id: str, deadline_seconds: Optional[float] = None) -> CycleResult:
        """
        1サービスの同期サイクルを実行

        Args:
            service_id: サービスID
            deadline_seconds: サイクル全体の上限（秒）。未指定なら設定値

        Returns:
            サイクル結果。ストア障害は FAILED_STORE_UNAVAILABLE として返し、例外にしない
        """
        start = self.clock()
        limit = deadline_seconds if deadline_seconds is not None else self.config.cycle_deadline
        cycle = _Cycle(service_id, start, start + limit if limit is not None else None)

        logger.info(f"Starting sync cycle for {service_id}")

        try:
            return self._run(cycle)
        except StoreUnavailableError as e:
            logger.error(f"Circuit breaker store unavailable, skipping {service_id} for this cycle: {e}")
            return self._finish(cycle, CycleOutcome.FAILED_STORE_UNAVAILABLE, str(e))

    def _remaining(self, cycle: _Cycle) -> Optional[float]:
        if cycle.deadline is None:
            return None
        return cycle.deadline - self.clock()

    def _run(self, cycle: _Cycle) -> CycleResult:
        service_id = cycle.service_id

        if not self.circuit_breaker.allow(service_id):
            return self._finish(cycle, CycleOutcome.SKIPPED_CIRCUIT_OPEN,
                                "Circuit is open, sync skipped")

        first_sync, recent_timeouts = self._history_hints(service_id)
        if first_sync:
            logger.info(f"Detected first sync for {service_id} - using extended timeout")

        attempt = 0
        while True:
            attempt += 1
            timeout = self.config.get_attempt_timeout(attempt, first_sync, recent_timeouts)

            remaining = self._remaining(cycle)
            if remaining is not None and remaining <= 0:
                return self._finish(cycle, CycleOutcome.FAILED_TIMEOUT,
                                    "Cycle deadline expired before the next attempt")

            forced = None
            truncated = False
            if self.readiness_check is not None and not self.readiness_check(service_id, remaining):
                remaining = self._remaining(cycle)
                if remaining is not None and remaining <= 0:
                    return self._finish(cycle, CycleOutcome.FAILED_TIMEOUT,
                                        "Cycle deadline expired while waiting for the cloud mount")
                logger.warning(f"Cloud storage for {service_id} is not accessible, skipping sync attempt")
                result = SyncResult(
                    exit_status=MOUNT_UNAVAILABLE_EXIT_STATUS,
                    output=f"Cloud mount for {service_id} is not accessible",
                    duration=0.0,
                )
                forced = (ErrorCategory.NETWORK, MOUNT_UNAVAILABLE_RULE)
            else:
                remaining = self._remaining(cycle)
                if remaining is not None:
                    if remaining <= 0:
                        return self._finish(cycle, CycleOutcome.FAILED_TIMEOUT,
                                            "Cycle deadline expired before the next attempt")
                    if remaining < timeout:
                        timeout = remaining
                        truncated = True

                logger.info(f"Sync attempt {attempt}/{self.config.max_retries} for {service_id}")
                result = self.sync_executor(service_id, timeout)

            record = AttemptRecord(
                attempt=attempt,
                exit_status=result.exit_status,
                duration=result.duration,
                timeout=timeout,
                timed_out=result.timed_out,
            )
            cycle.attempts.append(record)

            if result.success:
                self._record_history(service_id, attempt, result, "success")
                self.circuit_breaker.handle_result(service_id, True)
                return self._finish(cycle, CycleOutcome.SUCCESS, f"Sync succeeded on attempt {attempt}")

            if result.timed_out and truncated:
                # 期限で打ち切った試行はサービスの失敗として数えない
                self._record_history(service_id, attempt, result, "timeout")
                return self._finish(cycle, CycleOutcome.FAILED_TIMEOUT,
                                    "Cycle deadline expired during sync")

            category, rule = forced or self.classifier.classify_detailed(result.exit_status, result.output)
            record.category = category.value
            record.rule = rule
            self._record_history(service_id, attempt, result,
                                 "timeout" if result.timed_out else "failure", category)
            if result.timed_out:
                recent_timeouts += 1

            logger.warning(
                f"Sync attempt {attempt} for {service_id} failed "
                f"(exit {result.exit_status}, error type: {category.value})"
            )
            self.circuit_breaker.handle_result(service_id, False, category)

            context = self.context_factory(service_id, category, result)
            remaining = self._remaining(cycle)
            if remaining is not None:
                context.limit_to(remaining)
            recovery = self.recovery_engine.attempt_recovery(service_id, category, context)
            record.recovery = recovery.to_dict()
            record.next_action = recovery.next_action.value

            if attempt >= self.config.max_retries:
                return self._finish(cycle, CycleOutcome.FAILED_EXHAUSTED,
                                    f"All {attempt} attempts failed (last error: {category.value})")

            if recovery.next_action == NextAction.MANUAL_INTERVENTION:
                return self._finish(cycle, CycleOutcome.FAILED_MANUAL,
                                    f"Manual intervention required for {category.value} error")

            if recovery.next_action == NextAction.RETRY_IMMEDIATELY:
                logger.info(f"Recovery succeeded for {service_id}, retrying immediately")
                continue

            delay = self.config.get_retry_delay(attempt, self.policy_lookup(category), self.rng)
            remaining = self._remaining(cycle)
            if remaining is not None and delay >= remaining:
                return self._finish(cycle, CycleOutcome.FAILED_TIMEOUT,
                                    "Cycle deadline expired before the next retry")

            record.delay = delay
            logger.info(f"Waiting {delay:.1f}s before retrying {service_id}")
            self.sleep(delay)

    def _history_hints(self, service_id: str):
        """初回同期かどうかと直近のタイムアウト数（履歴が読めなければ基本タイムアウト）"""
        if self.history is None:
            return False, 0
        try:
            return (
                self.history.is_first_sync(service_id),
                self.history.recent_timeouts(service_id, self.config.recent_timeout_window),
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read sync history for {service_id}, using base timeout: {e}")
            return False, 0

    def _record_history(self,
                        service_id: str,
                        attempt: int,
                        result: SyncResult,
                        status: str,
                        category: Optional[ErrorCategory] = None) -> None:
        if self.history is None:
            return
        try:
            self.history.record(SyncHistoryEntry(
                service_id=service_id,
                status=status,
                exit_status=result.exit_status,
                duration=round(result.duration, 3),
                timed_out=result.timed_out,
                category=category.value if category else None,
                attempt=attempt,
            ))
        except OSError as e:
            logger.warning(f"Failed to record sync history for {service_id}: {e}")

    def _finish(self, cycle: _Cycle, outcome: CycleOutcome, message: str) -> CycleResult:
        record = self.circuit_breaker.get_record(cycle.service_id)
        result = CycleResult(
            service_id=cycle.service_id,
            outcome=outcome,
            attempts=cycle.attempts,
            circuit_state=record.state.value,
            message=message,
            duration=self.clock() - cycle.start,
        )

        if outcome.requires_attention:
            logger.error(f"Sync cycle for {cycle.service_id} ended with {outcome.value}: {message}")
        else:
            logger.info(f"Sync cycle for {cycle.service_id} ended with {outcome.value}: {message}")

        if self.event_logger is not None:
            self.event_logger.log_operation(
                "sync_cycle",
                outcome.value,
                service_id=cycle.service_id,
                duration_ms=result.duration * 1000,
                attempts=len(cycle.attempts),
                circuit_state=result.circuit_state,
                detail=message,
            )
        return result
