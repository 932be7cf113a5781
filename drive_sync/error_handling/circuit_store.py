"""
Drive Sync System - Circuit Breaker Store
サービスごとのサーキットブレーカー状態の永続化
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from ..core.file_lock import FileLock, LockTimeoutError
from ..exceptions import StoreUnavailableError
from .error_classifier import ErrorCategory

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class CircuitState(Enum):
    """サーキットブレーカー状態"""
    CLOSED = "closed"        # 正常状態（同期を実行）
    OPEN = "open"            # 障害状態（同期をスキップ）
    HALF_OPEN = "half_open"  # 回復試行状態（1回だけ試行）

    @classmethod
    def parse(cls, value: str) -> "CircuitState":
        # 旧形式の "half-open" も受け付ける
        return cls(value.replace("-", "_"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ServiceCircuitRecord:
    """サービスのサーキット状態レコード"""
    service_id: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[datetime] = None
    error_type: Optional[ErrorCategory] = None
    last_updated: Optional[datetime] = None

    @classmethod
    def closed(cls, service_id: str, now: Optional[datetime] = None) -> "ServiceCircuitRecord":
        """初期状態（CLOSED・失敗0）のレコードを作成"""
        return cls(service_id=service_id, last_updated=now)

    def evolve(self, **changes: Any) -> "ServiceCircuitRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": _format_time(self.last_failure_time),
            "error_type": self.error_type.value if self.error_type else None,
            "last_updated": _format_time(self.last_updated),
        }

    @classmethod
    def from_dict(cls, service_id: str, data: Dict[str, Any]) -> "ServiceCircuitRecord":
        failure_count = int(data.get("failure_count", 0))
        if failure_count < 0:
            raise ValueError(f"Negative failure_count: {failure_count}")
        return cls(
            service_id=service_id,
            state=CircuitState.parse(data.get("state", CircuitState.CLOSED.value)),
            failure_count=failure_count,
            last_failure_time=_parse_time(data.get("last_failure_time")),
            error_type=ErrorCategory.from_value(data.get("error_type")),
            last_updated=_parse_time(data.get("last_updated")),
        )


RecordMutator = Callable[[ServiceCircuitRecord], Optional[ServiceCircuitRecord]]


class CircuitBreakerStore(ABC):
    """サーキットブレーカー状態ストア

    すべての読み書きはロック → 読み込み → 計算 → 書き込み → 解放
    の1トランザクションで行う。破損したストアはCLOSEDとして読む。
    """

    def __init__(self, write_retries: int = 3, retry_delay: float = 0.1):
        self.write_retries = write_retries
        self.retry_delay = retry_delay

    @abstractmethod
    def _locked(self):
        """ストア全体のロックを保持するコンテキストマネージャー"""

    @abstractmethod
    def _load_raw(self) -> Dict[str, Any]:
        """永続化されたサービスマッピングを読み込む（失敗時は例外）"""

    @abstractmethod
    def _save_raw(self, services: Dict[str, Any]) -> None:
        """サービスマッピングを永続化（失敗時は例外）"""

    def _load_services(self) -> Dict[str, Any]:
        try:
            services = self._load_raw()
        except (OSError, ValueError) as e:
            logger.warning(f"Circuit breaker store unreadable, treating all circuits as closed: {e}")
            return {}
        if not isinstance(services, dict):
            logger.warning("Circuit breaker store has unexpected shape, treating all circuits as closed")
            return {}
        return services

    def _record_from(self, services: Dict[str, Any], service_id: str) -> ServiceCircuitRecord:
        data = services.get(service_id)
        if data is None:
            return ServiceCircuitRecord.closed(service_id)
        try:
            return ServiceCircuitRecord.from_dict(service_id, data)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Corrupted circuit record for {service_id}, treating as closed: {e}")
            return ServiceCircuitRecord.closed(service_id)

    def _save_services(self, services: Dict[str, Any]) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.write_retries + 1):
            try:
                self._save_raw(services)
                return
            except OSError as e:
                last_error = e
                logger.warning(f"Circuit breaker store write failed (attempt {attempt}/{self.write_retries}): {e}")
                if attempt < self.write_retries:
                    time.sleep(self.retry_delay)
        raise StoreUnavailableError("Circuit breaker store is not writable", str(last_error))

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            with self._locked():
                yield
        except LockTimeoutError as e:
            raise StoreUnavailableError("Circuit breaker store lock unavailable", str(e))

    def read(self, service_id: str) -> ServiceCircuitRecord:
        """レコードを読み込む（未登録ならCLOSEDの既定レコード）"""
        try:
            with self._transaction():
                return self._record_from(self._load_services(), service_id)
        except StoreUnavailableError as e:
            logger.warning(f"Reading {service_id} without lock failed, treating as closed: {e}")
            return ServiceCircuitRecord.closed(service_id)

    def read_all(self) -> Dict[str, ServiceCircuitRecord]:
        """全サービスのレコードを読み込む"""
        with self._transaction():
            services = self._load_services()
            return {
                service_id: self._record_from(services, service_id)
                for service_id in sorted(services)
            }

    def write(self, service_id: str, record: ServiceCircuitRecord) -> None:
        """レコードを書き込む"""
        with self._transaction():
            services = self._load_services()
            services[service_id] = record.to_dict()
            self._save_services(services)

    def update(self, service_id: str, mutator: RecordMutator) -> ServiceCircuitRecord:
        """
        1トランザクション内でレコードを読み込み・変更・書き込み

        Args:
            service_id: サービスID
            mutator: 現在のレコードを受け取り新しいレコードを返す関数。
                     Noneを返した場合は書き込まない

        Returns:
            更新後（または変更なしの）レコード
        """
        with self._transaction():
            services = self._load_services()
            current = self._record_from(services, service_id)
            updated = mutator(current)
            if updated is None:
                return current
            services[service_id] = updated.to_dict()
            self._save_services(services)
            return updated

    def reset(self, service_id: str, now: Optional[datetime] = None) -> ServiceCircuitRecord:
        """レコードをCLOSED・失敗0で作り直す"""
        record = ServiceCircuitRecord.closed(service_id, now or utc_now())
        self.write(service_id, record)
        return record

    def reset_all(self, now: Optional[datetime] = None) -> List[ServiceCircuitRecord]:
        """全レコードをリセット"""
        now = now or utc_now()
        with self._transaction():
            services = self._load_services()
            records = [ServiceCircuitRecord.closed(service_id, now) for service_id in sorted(services)]
            if records:
                self._save_services({record.service_id: record.to_dict() for record in records})
            return records


class FileCircuitBreakerStore(CircuitBreakerStore):
    """JSONファイルによる状態ストア

    書き込みは一時ファイル → os.replace のアトミックリネーム。
    読み書き全体を隣接する .lock ファイルのアドバイザリロックで保護する。
    """

    def __init__(self,
                 state_file: Union[str, Path],
                 lock_timeout: float = 10.0,
                 write_retries: int = 3,
                 retry_delay: float = 0.1):
        super().__init__(write_retries=write_retries, retry_delay=retry_delay)
        self.state_file = Path(state_file).expanduser()
        self.lock_file = self.state_file.with_name(self.state_file.name + ".lock")
        self.lock_timeout = lock_timeout

        logger.info(f"FileCircuitBreakerStore initialized: {self.state_file}")

    def _locked(self):
        return FileLock(self.lock_file, timeout=self.lock_timeout)

    def _load_raw(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            return {}
        with open(self.state_file, "r", encoding="utf-8") as f:
            document = json.load(f)
        if not isinstance(document, dict):
            raise ValueError("State document is not a JSON object")
        return document.get("services", {})

    def _save_raw(self, services: Dict[str, Any]) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        document = {"version": STORE_VERSION, "services": services}

        fd, temp_path = tempfile.mkstemp(
            prefix=f".{self.state_file.name}.",
            suffix=".tmp",
            dir=str(self.state_file.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.state_file)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise


class InMemoryCircuitBreakerStore(CircuitBreakerStore):
    """メモリ上の状態ストア（テスト・単一プロセス用）"""

    def __init__(self, services: Optional[Dict[str, Any]] = None):
        super().__init__(write_retries=1, retry_delay=0.0)
        self._services: Dict[str, Any] = copy.deepcopy(services or {})
        self._lock = threading.RLock()

    def _locked(self):
        return self._lock

    def _load_raw(self) -> Dict[str, Any]:
        return copy.deepcopy(self._services)

    def _save_raw(self, services: Dict[str, Any]) -> None:
        self._services = copy.deepcopy(services)

    def dump(self) -> Dict[str, Any]:
        """永続化形式のコピーを取得"""
        with self._lock:
            return copy.deepcopy(self._services)
