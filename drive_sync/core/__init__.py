"""
Drive Sync System - Core Module
設定・ファイルロックなどのコア機能を提供するモジュール
"""

from .file_lock import FileLock, LockTimeoutError
from .service_registry import ReliabilitySettings, ServiceConfig, ServiceRegistry

__all__ = [
    "FileLock",
    "LockTimeoutError",
    "ReliabilitySettings",
    "ServiceConfig",
    "ServiceRegistry"
]
