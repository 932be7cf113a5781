"""
Drive Sync System - Circuit Breaker
サービスごとのサーキットブレーカー状態機械
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .circuit_store import CircuitBreakerStore, CircuitState, ServiceCircuitRecord, utc_now
from .error_classifier import ErrorCategory
from .error_policy import ErrorPolicy, get_policy

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """永続化ストアを介したサーキットブレーカー

    状態はすべてストアに保持し、インスタンス自体は状態を持たない。
    各操作はストアの1トランザクション（ロック → 読込 → 計算 → 書込）で完結する。
    """

    def __init__(self,
                 store: CircuitBreakerStore,
                 policy_lookup: Callable[[Optional[ErrorCategory]], ErrorPolicy] = get_policy,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        初期化

        Args:
            store: 状態ストア
            policy_lookup: エラーカテゴリからポリシーを引く関数
            clock: 現在時刻（UTC）を返す関数。テストで差し替える
        """
        self.store = store
        self.policy_lookup = policy_lookup
        self.clock = clock or utc_now

        # 状態変更時のコールバック
        self.state_change_callbacks: List[StateChangeCallback] = []

        logger.info(f"CircuitBreaker initialized with {type(store).__name__}")

    def add_state_change_callback(self, callback: StateChangeCallback) -> None:
        """状態変更コールバックを追加"""
        self.state_change_callbacks.append(callback)

    def allow(self, service_id: str) -> bool:
        """
        同期の実行可否を判定

        OPEN状態でリセット時間が経過していればHALF_OPENへ移行し、
        1回の試行を許可する。

        Raises:
            StoreUnavailableError: ストアが書き込み不能な場合
        """
        now = self.clock()
        decision = {"allowed": True, "old_state": None}

        def mutate(record: ServiceCircuitRecord) -> Optional[ServiceCircuitRecord]:
            decision["old_state"] = record.state
            if record.state != CircuitState.OPEN:
                return None

            if not self._reset_timeout_elapsed(record, now):
                decision["allowed"] = False
                return None

            return record.evolve(state=CircuitState.HALF_OPEN, last_updated=now)

        record = self.store.update(service_id, mutate)
        old_state = decision["old_state"]

        if not decision["allowed"]:
            logger.warning(f"Circuit breaker for {service_id} is open - operation blocked")
            return False

        if old_state == CircuitState.OPEN:
            logger.info(f"Circuit breaker for {service_id} transitioned to half-open state after timeout")
            self._notify(service_id, old_state, record.state)
        elif old_state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker for {service_id} is half-open - allowing test operation")

        return True

    def handle_result(self,
                      service_id: str,
                      success: bool,
                      error_type: Optional[ErrorCategory] = None) -> ServiceCircuitRecord:
        """
        同期結果をサーキット状態に反映

        Args:
            service_id: サービスID
            success: 同期が成功したか
            error_type: 失敗時のエラーカテゴリ

        Returns:
            更新後のレコード

        Raises:
            StoreUnavailableError: ストアが書き込み不能な場合
        """
        now = self.clock()
        previous: Dict[str, ServiceCircuitRecord] = {}

        def mutate(record: ServiceCircuitRecord) -> Optional[ServiceCircuitRecord]:
            previous["record"] = record
            if success:
                return self._on_success(record, now)
            return self._on_failure(record, error_type, now)

        record = self.store.update(service_id, mutate)
        old = previous["record"]
        self._log_result(service_id, success, old, record)

        if old.state != record.state:
            self._notify(service_id, old.state, record.state)

        return record

    def _on_success(self,
                    record: ServiceCircuitRecord,
                    now: datetime) -> Optional[ServiceCircuitRecord]:
        if record.state in (CircuitState.OPEN, CircuitState.HALF_OPEN):
            return record.evolve(state=CircuitState.CLOSED, failure_count=0, last_updated=now)

        if record.failure_count > 0:
            return record.evolve(failure_count=0, last_updated=now)

        return None

    def _on_failure(self,
                    record: ServiceCircuitRecord,
                    error_type: Optional[ErrorCategory],
                    now: datetime) -> ServiceCircuitRecord:
        failure_count = record.failure_count + 1
        state = record.state

        if record.state == CircuitState.HALF_OPEN:
            # 試行の失敗は閾値を待たずに再オープン
            state = CircuitState.OPEN
        elif record.state == CircuitState.CLOSED:
            if failure_count >= self.policy_lookup(error_type).failure_threshold:
                state = CircuitState.OPEN

        return record.evolve(
            state=state,
            failure_count=failure_count,
            last_failure_time=now,
            error_type=error_type,
            last_updated=now,
        )

    def _reset_timeout_elapsed(self, record: ServiceCircuitRecord, now: datetime) -> bool:
        if record.last_failure_time is None:
            # 失敗時刻が欠けたOPENは試行を許可して状態を回復させる
            return True
        reset_timeout = self.policy_lookup(record.error_type).reset_timeout
        return now - record.last_failure_time >= timedelta(seconds=reset_timeout)

    def _log_result(self,
                    service_id: str,
                    success: bool,
                    old: ServiceCircuitRecord,
                    new: ServiceCircuitRecord) -> None:
        if success:
            if old.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker for {service_id} closed after successful test operation")
            elif old.state == CircuitState.OPEN:
                logger.info(f"Circuit breaker for {service_id} closed after successful operation while open")
            elif old.failure_count > 0:
                logger.info(f"Circuit breaker for {service_id} reset failure count after success")
            return

        error = new.error_type.value if new.error_type else "unknown"
        if old.state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit breaker for {service_id} reopened after failed test operation")
        elif old.state == CircuitState.OPEN:
            logger.warning(f"Circuit breaker for {service_id} recorded additional failure while open")
        elif new.state == CircuitState.OPEN:
            logger.warning(
                f"Circuit breaker for {service_id} opened after {new.failure_count} consecutive failures "
                f"(error: {error})"
            )
        else:
            logger.info(
                f"Circuit breaker for {service_id} incremented failure count to {new.failure_count} "
                f"(error: {error})"
            )

    def _notify(self, service_id: str, old_state: CircuitState, new_state: CircuitState) -> None:
        for callback in self.state_change_callbacks:
            try:
                callback(service_id, old_state, new_state)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    def reset(self, service_id: str) -> ServiceCircuitRecord:
        """サーキットを手動でリセット（CLOSED・失敗0）"""
        old = self.store.read(service_id)
        record = self.store.reset(service_id, self.clock())
        logger.info(f"Circuit breaker for {service_id} manually reset")
        if old.state != record.state:
            self._notify(service_id, old.state, record.state)
        return record

    def reset_all(self) -> List[ServiceCircuitRecord]:
        """全サーキットをリセット"""
        logger.info("Resetting all circuit breakers")
        records = self.store.reset_all(self.clock())
        if not records:
            logger.info("No circuit breakers to reset")
        return records

    def get_record(self, service_id: str) -> ServiceCircuitRecord:
        """サービスのレコードを取得（未登録ならCLOSED）"""
        return self.store.read(service_id)

    def status(self) -> List[ServiceCircuitRecord]:
        """永続化されている全サービスのレコードを取得"""
        return list(self.store.read_all().values())

    def get_status(self, service_id: str) -> Dict[str, Any]:
        """表示用の状態を取得"""
        record = self.store.read(service_id)
        policy = self.policy_lookup(record.error_type)
        now = self.clock()

        status = {
            "service_id": service_id,
            **record.to_dict(),
            "failure_threshold": policy.failure_threshold,
            "reset_timeout": policy.reset_timeout,
            "next_attempt_time": None,
            "time_until_next_attempt_seconds": None,
        }

        if record.state == CircuitState.OPEN and record.last_failure_time is not None:
            next_attempt = record.last_failure_time + timedelta(seconds=policy.reset_timeout)
            status["next_attempt_time"] = next_attempt.isoformat()
            status["time_until_next_attempt_seconds"] = max(0.0, (next_attempt - now).total_seconds())

        return status
