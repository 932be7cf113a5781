"""
Drive Sync System - Error Handling Module
エラー分類・サーキットブレーカー・自動復旧・再試行制御
"""

from .error_classifier import (
    ErrorSeverity,
    ErrorCategory,
    ErrorClassifier
)
from .error_policy import (
    RecoveryActionType,
    ErrorPolicy,
    ERROR_POLICIES,
    get_policy
)
from .circuit_store import (
    CircuitState,
    ServiceCircuitRecord,
    CircuitBreakerStore,
    FileCircuitBreakerStore,
    InMemoryCircuitBreakerStore
)
from .circuit_breaker import CircuitBreaker
from .recovery_actions import (
    RecoveryContext,
    RecoveryActionRegistry,
    default_action_registry
)
from .recovery_engine import (
    NextAction,
    RecoveryActionResult,
    RecoveryOutcome,
    RecoveryEngine
)
from .retry_controller import (
    CycleOutcome,
    CycleResult,
    AttemptRecord,
    RetryConfig,
    RetryController
)

__all__ = [
    # Classification
    'ErrorSeverity',
    'ErrorCategory',
    'ErrorClassifier',

    # Policy
    'RecoveryActionType',
    'ErrorPolicy',
    'ERROR_POLICIES',
    'get_policy',

    # Circuit Breaker
    'CircuitState',
    'ServiceCircuitRecord',
    'CircuitBreakerStore',
    'FileCircuitBreakerStore',
    'InMemoryCircuitBreakerStore',
    'CircuitBreaker',

    # Recovery
    'RecoveryContext',
    'RecoveryActionRegistry',
    'default_action_registry',
    'NextAction',
    'RecoveryActionResult',
    'RecoveryOutcome',
    'RecoveryEngine',

    # Retry
    'CycleOutcome',
    'CycleResult',
    'AttemptRecord',
    'RetryConfig',
    'RetryController'
]
