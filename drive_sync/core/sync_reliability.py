"""
Drive Sync System - Sync Reliability Manager
信頼性レイヤーの組み立てとオペレーター向け操作
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..error_handling.circuit_breaker import CircuitBreaker
from ..error_handling.circuit_store import (
    CircuitBreakerStore,
    CircuitState,
    FileCircuitBreakerStore,
    ServiceCircuitRecord,
)
from ..error_handling.error_classifier import ErrorCategory, ErrorClassifier
from ..error_handling.recovery_actions import RecoveryContext
from ..error_handling.recovery_engine import RecoveryEngine
from ..error_handling.retry_controller import CycleOutcome, CycleResult, RetryConfig, RetryController
from ..logging.structured_logger import StructuredLogger
from ..sync.run_lock import ServiceRunLock
from ..sync.sync_history import SyncHistory
from ..sync.sync_runner import SyncResult, UnisonSyncRunner, wait_for_path
from .service_registry import ServiceRegistry

logger = logging.getLogger(__name__)

EVENT_LOG_NAME = "sync_events.jsonl"
HISTORY_NAME = "sync_history.jsonl"


class SyncReliabilityManager:
    """同期信頼性マネージャー

    スケジューラーやツール呼び出しから使う唯一の入口。
    run_cycle / status / reset / reset_all を提供する。
    """

    def __init__(self,
                 registry: Optional[ServiceRegistry] = None,
                 store: Optional[CircuitBreakerStore] = None,
                 runner: Optional[UnisonSyncRunner] = None,
                 recovery_engine: Optional[RecoveryEngine] = None,
                 event_logger: Optional[StructuredLogger] = None,
                 history: Optional[SyncHistory] = None,
                 **controller_options: Any):
        """
        初期化

        Args:
            registry: サービス設定レジストリ
            store: サーキットブレーカー状態ストア（省略時は設定の状態ファイル）
            runner: 同期ランナー（省略時はUnison）
            recovery_engine: 復旧エンジン
            event_logger: 構造化イベントロガー
            history: 同期履歴
            controller_options: RetryController に渡す追加引数（sleep, clock, rng）
        """
        self.registry = registry or ServiceRegistry()
        self.settings = self.registry.get_settings()
        self._sleep = controller_options.get("sleep", time.sleep)
        services = self.registry.list_services(enabled_only=False)

        log_dir = self.settings.path("log_dir")
        self.store = store or FileCircuitBreakerStore(
            self.settings.path("state_file"),
            lock_timeout=self.settings.lock_timeout,
        )
        self.circuit_breaker = CircuitBreaker(self.store)
        self.classifier = ErrorClassifier()
        self.recovery_engine = recovery_engine or RecoveryEngine()
        self.runner = runner or UnisonSyncRunner(
            {service_id: service.profile_name for service_id, service in services.items()},
            unison_binary=self.settings.unison_binary,
        )
        self.history = history or SyncHistory(log_dir / HISTORY_NAME)
        self.event_logger = event_logger or StructuredLogger(log_dir / EVENT_LOG_NAME)

        self.circuit_breaker.add_state_change_callback(self._on_state_change)

        self.controller = RetryController(
            circuit_breaker=self.circuit_breaker,
            classifier=self.classifier,
            recovery_engine=self.recovery_engine,
            sync_executor=self.runner.execute_sync,
            context_factory=self.build_recovery_context,
            readiness_check=self.wait_until_ready,
            config=self.retry_config(),
            history=self.history,
            event_logger=self.event_logger,
            **controller_options,
        )

        logger.info(f"SyncReliabilityManager initialized with {len(services)} services")

    def retry_config(self) -> RetryConfig:
        """設定から再試行設定を作成"""
        return RetryConfig(
            max_retries=self.settings.max_retries,
            base_timeout=self.settings.base_timeout,
            base_retry_delay=self.settings.base_retry_delay,
            max_retry_delay=self.settings.max_retry_delay,
            cycle_deadline=self.settings.cycle_deadline,
        )

    def _on_state_change(self, service_id: str, old_state: CircuitState, new_state: CircuitState) -> None:
        self.event_logger.log_state_change(service_id, old_state.value, new_state.value)

    def build_recovery_context(self,
                               service_id: str,
                               category: ErrorCategory,
                               result: SyncResult) -> RecoveryContext:
        """サービス設定から復旧コンテキストを組み立て"""
        service = self.registry.require_service(service_id)
        settings = self.settings
        profile_backup_dir = settings.path("profile_backup_dir") if settings.profile_backup_dir else None

        def selective_sync(paths: List[str], timeout: float) -> bool:
            return self.runner.execute_paths(service_id, paths, timeout).success

        return RecoveryContext(
            service_id=service_id,
            error_category=category,
            exit_status=result.exit_status,
            output=result.output,
            sync_root=service.sync_root_path,
            remote_root=service.remote_root_path,
            profile_name=service.profile_name,
            profile_dir=settings.path("profile_dir"),
            profile_backup_dir=profile_backup_dir,
            backup_dir=settings.path("backup_dir"),
            log_dir=settings.path("log_dir"),
            credential_refresh_command=list(service.credential_refresh_command) or None,
            endpoints=list(service.endpoints),
            probe_hosts=list(settings.connectivity_probe_hosts),
            connectivity_wait_seconds=settings.connectivity_wait_seconds,
            connectivity_interval=settings.connectivity_interval,
            min_free_bytes=settings.min_free_bytes,
            selective_sync=selective_sync,
            selective_timeout=settings.base_timeout,
            sleep=self._sleep,
        )

    def wait_until_ready(self, service_id: str, remaining: Optional[float] = None) -> bool:
        """クラウドのマウントポイントが読めるまで待機（サイクルの残り時間を超えない）"""
        service = self.registry.require_service(service_id)
        max_wait = self.settings.mount_wait_seconds
        if remaining is not None:
            max_wait = max(0.0, min(max_wait, remaining))
        return wait_for_path(service.remote_root_path, max_wait,
                             self.settings.mount_check_interval, self._sleep)

    def run_cycle(self, service_id: str, deadline_seconds: Optional[float] = None) -> CycleResult:
        """
        1サービスの同期サイクルを実行

        Raises:
            ServiceNotFoundError: サービスが設定されていない場合
        """
        self.registry.require_service(service_id)

        run_lock = ServiceRunLock(self.settings.path("lock_dir"), service_id)
        if not run_lock.try_acquire():
            record = self.circuit_breaker.get_record(service_id)
            result = CycleResult(
                service_id=service_id,
                outcome=CycleOutcome.SKIPPED_IN_PROGRESS,
                circuit_state=record.state.value,
                message="Another sync cycle for this service is in progress",
            )
            self.event_logger.log_operation("sync_cycle", result.outcome.value, service_id=service_id)
            return result

        with run_lock:
            return self.controller.run_cycle(service_id, deadline_seconds)

    def run_all(self,
                service_ids: Optional[Sequence[str]] = None,
                deadline_seconds: Optional[float] = None) -> List[CycleResult]:
        """
        有効な全サービス（または指定サービス）を順に同期

        Raises:
            ServiceNotFoundError: 指定サービスのいずれかが設定されていない場合（実行前に確認）
        """
        targets = list(service_ids) if service_ids else list(self.registry.list_services())
        for service_id in targets:
            self.registry.require_service(service_id)

        results = []
        for service_id in targets:
            results.append(self.run_cycle(service_id, deadline_seconds))
        return results

    def reset(self, service_id: str) -> ServiceCircuitRecord:
        """サーキットを手動でリセット"""
        record = self.circuit_breaker.reset(service_id)
        self.event_logger.log_event("circuit_reset", f"Circuit for {service_id} manually reset",
                                    service_id=service_id)
        return record

    def reset_all(self) -> List[ServiceCircuitRecord]:
        """全サーキットをリセット"""
        records = self.circuit_breaker.reset_all()
        self.event_logger.log_event("circuit_reset_all", f"Reset {len(records)} circuits")
        return records

    def status(self) -> List[ServiceCircuitRecord]:
        """設定済みサービスと永続化済みサービスの状態一覧"""
        records = {record.service_id: record for record in self.circuit_breaker.status()}
        for service_id in self.registry.list_services(enabled_only=False):
            if service_id not in records:
                records[service_id] = ServiceCircuitRecord.closed(service_id)
        return [records[service_id] for service_id in sorted(records)]

    def status_report(self) -> Dict[str, Any]:
        """表示用の状態レポート"""
        services = []
        for record in self.status():
            entry = self.circuit_breaker.get_status(record.service_id)
            service = self.registry.get_service(record.service_id)
            entry["display_name"] = service.display_name if service else ""
            entry["enabled"] = service.enabled if service else False
            services.append(entry)

        return {
            "generated_at": datetime.now().isoformat(),
            "state_file": str(getattr(self.store, "state_file", "")),
            "open_circuits": [s["service_id"] for s in services if s["state"] != CircuitState.CLOSED.value],
            "services": services,
        }

    def close(self) -> None:
        self.event_logger.close()
