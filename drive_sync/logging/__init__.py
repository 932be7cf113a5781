"""
Drive Sync System - Logging Module
同期イベントの構造化ログとログ管理機能
"""

from .structured_logger import (
    StructuredLogger,
    LogLevel,
    LogEntry
)
from .log_manager import (
    LogManager,
    LogCleanupResult
)

__all__ = [
    # Structured Logging
    'StructuredLogger',
    'LogLevel',
    'LogEntry',

    # Log Management
    'LogManager',
    'LogCleanupResult'
]
