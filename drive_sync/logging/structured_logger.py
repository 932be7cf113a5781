"""
Drive Sync System - Structured Logger
同期イベントの構造化ログ（JSON Lines）
"""

import json
import logging
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class LogLevel(Enum):
    """ログレベル"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging_level(self) -> int:
        """標準ライブラリのログレベルに変換"""
        mapping = {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
            LogLevel.CRITICAL: logging.CRITICAL
        }
        return mapping[self]


@dataclass
class LogEntry:
    """構造化ログエントリー"""
    timestamp: str
    level: LogLevel
    event: str
    message: str
    service_id: Optional[str] = None
    component: str = "drive_sync"
    context: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None

    def __post_init__(self):
        if self.context is None:
            self.context = {}

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        data = asdict(self)
        data["level"] = self.level.value
        return data

    def to_json(self) -> str:
        """JSON形式に変換"""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class StructuredLogger:
    """同期イベントをJSON Linesで記録するロガー

    出力は専用ファイルのみ。通常のログ（コンソール）には伝播しない。
    """

    def __init__(self,
                 log_file: Path,
                 name: str = "drive_sync.events",
                 component: str = "drive_sync"):
        """
        初期化

        Args:
            log_file: イベントログファイルのパス
            name: 標準ライブラリロガー名
            component: エントリーに記録するコンポーネント名
        """
        self.log_file = Path(log_file).expanduser()
        self.name = name
        self.component = component

        self.std_logger = logging.getLogger(name)
        self.std_logger.setLevel(logging.DEBUG)
        self.std_logger.propagate = False

        # 同名ロガーの既存ハンドラーを閉じて差し替える
        for handler in list(self.std_logger.handlers):
            handler.close()
            self.std_logger.removeHandler(handler)

        self._setup_handlers()

        logger.debug(f"StructuredLogger initialized: {self.log_file}")

    def _setup_handlers(self) -> None:
        """ログハンドラーを設定"""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        self.std_logger.addHandler(file_handler)

    def close(self) -> None:
        """ハンドラーを閉じる"""
        for handler in list(self.std_logger.handlers):
            handler.close()
            self.std_logger.removeHandler(handler)

    def log_event(self,
                  event: str,
                  message: str,
                  service_id: Optional[str] = None,
                  level: LogLevel = LogLevel.INFO,
                  exception: Optional[BaseException] = None,
                  **context: Any) -> LogEntry:
        """イベントを記録"""
        stack_trace = None
        if exception is not None:
            stack_trace = ''.join(traceback.format_exception(
                type(exception), exception, exception.__traceback__
            ))

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            event=event,
            message=message,
            service_id=service_id,
            component=self.component,
            context=context,
            stack_trace=stack_trace,
        )
        self.std_logger.log(level.to_logging_level(), entry.to_json())
        return entry

    def log_operation(self,
                      operation: str,
                      status: str,
                      service_id: Optional[str] = None,
                      duration_ms: Optional[float] = None,
                      **context: Any) -> LogEntry:
        """操作ログを記録"""
        context["operation"] = operation
        context["status"] = status
        if duration_ms is not None:
            context["duration_ms"] = round(duration_ms, 2)

        if status == "success":
            return self.log_event("operation", f"Operation completed: {operation}",
                                  service_id=service_id, **context)
        if status.startswith("failed"):
            return self.log_event("operation", f"Operation failed: {operation}",
                                  service_id=service_id, level=LogLevel.ERROR, **context)
        return self.log_event("operation", f"Operation {status}: {operation}",
                              service_id=service_id, **context)

    def log_state_change(self, service_id: str, old_state: str, new_state: str) -> LogEntry:
        """サーキット状態の変化を記録"""
        level = LogLevel.WARNING if new_state == "open" else LogLevel.INFO
        return self.log_event(
            "circuit_state_change",
            f"Circuit for {service_id} changed from {old_state} to {new_state}",
            service_id=service_id,
            level=level,
            old_state=old_state,
            new_state=new_state,
        )
