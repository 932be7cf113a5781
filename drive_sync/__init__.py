"""
Drive Sync System - 同期信頼性レイヤー
クラウドドライブ同期のサーキットブレーカー・エラー分類・自動復旧

Version: 1.0.0
Author: Drive Sync Development Team
"""

__version__ = "1.0.0"
__author__ = "Drive Sync Development Team"

from .core.service_registry import ServiceRegistry, ServiceConfig, ReliabilitySettings
from .core.sync_reliability import SyncReliabilityManager
from .error_handling.error_classifier import ErrorCategory, ErrorClassifier
from .error_handling.circuit_breaker import CircuitBreaker
from .error_handling.circuit_store import CircuitState, FileCircuitBreakerStore
from .error_handling.retry_controller import CycleOutcome, CycleResult, RetryController

__all__ = [
    "ServiceRegistry",
    "ServiceConfig",
    "ReliabilitySettings",
    "SyncReliabilityManager",
    "ErrorCategory",
    "ErrorClassifier",
    "CircuitBreaker",
    "CircuitState",
    "FileCircuitBreakerStore",
    "CycleOutcome",
    "CycleResult",
    "RetryController"
]
