"""
Drive Sync System - 例外クラス定義
統一されたエラーハンドリングのための例外クラス群
"""

from typing import Optional


class DriveSyncException(Exception):
    """Drive Sync System基底例外クラス"""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(DriveSyncException):
    """設定ファイル関連エラー"""
    pass


class ValidationError(DriveSyncException):
    """データ検証エラー"""
    pass


class ServiceNotFoundError(DriveSyncException):
    """同期サービスが見つからない場合のエラー"""
    pass


class StoreUnavailableError(DriveSyncException):
    """サーキットブレーカー状態ストアが書き込み不能

    このサイクルにとっては致命的。呼び出し側はログに記録してスキップする。
    """
    pass