"""
Drive Sync System - Sync Module
同期ツールの実行・履歴・実行ロック
"""

from .sync_runner import SyncResult, UnisonSyncRunner
from .sync_history import SyncHistory, SyncHistoryEntry
from .run_lock import ServiceRunLock

__all__ = [
    'SyncResult',
    'UnisonSyncRunner',
    'SyncHistory',
    'SyncHistoryEntry',
    'ServiceRunLock'
]
