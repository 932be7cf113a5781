"""
Drive Sync System - Circuit Breaker Store Tests
サーキットブレーカー状態ストアのテスト
"""

import json
import threading
from datetime import datetime, timezone

import pytest

from drive_sync.core.file_lock import FileLock
from drive_sync.error_handling.circuit_store import (
    CircuitState,
    FileCircuitBreakerStore,
    InMemoryCircuitBreakerStore,
    ServiceCircuitRecord
)
from drive_sync.error_handling.error_classifier import ErrorCategory
from drive_sync.exceptions import StoreUnavailableError

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


def _open_record(service_id="icloud"):
    return ServiceCircuitRecord(
        service_id=service_id,
        state=CircuitState.OPEN,
        failure_count=2,
        last_failure_time=NOW,
        error_type=ErrorCategory.QUOTA,
        last_updated=NOW,
    )


class TestServiceCircuitRecord:
    """ServiceCircuitRecordのテストクラス"""

    def test_to_dict_and_back(self):
        """永続化形式との変換"""
        record = _open_record()
        data = record.to_dict()

        assert data == {
            "state": "open",
            "failure_count": 2,
            "last_failure_time": NOW.isoformat(),
            "error_type": "quota",
            "last_updated": NOW.isoformat(),
        }
        assert ServiceCircuitRecord.from_dict("icloud", data) == record

    def test_legacy_half_open_spelling(self):
        """"half-open" 表記も読み込める"""
        record = ServiceCircuitRecord.from_dict("icloud", {"state": "half-open", "failure_count": 1})
        assert record.state == CircuitState.HALF_OPEN

    def test_zulu_timestamp(self):
        """Z付きのタイムスタンプはUTCとして読む"""
        record = ServiceCircuitRecord.from_dict("icloud", {
            "state": "open",
            "failure_count": 1,
            "last_failure_time": "2026-01-15T09:00:00Z",
        })
        assert record.last_failure_time == NOW

    def test_negative_failure_count_rejected(self):
        with pytest.raises(ValueError):
            ServiceCircuitRecord.from_dict("icloud", {"state": "closed", "failure_count": -1})


class TestFileCircuitBreakerStore:
    """FileCircuitBreakerStoreのテストクラス"""

    @pytest.fixture
    def state_file(self, tmp_path):
        return tmp_path / "state" / "circuit_breaker_state.json"

    @pytest.fixture
    def store(self, state_file):
        return FileCircuitBreakerStore(state_file, lock_timeout=0.2, retry_delay=0)

    def test_missing_file_reads_closed(self, store):
        """状態ファイルが無ければCLOSED・失敗0"""
        record = store.read("icloud")
        assert record.state == CircuitState.CLOSED
        assert record.failure_count == 0

    def test_write_and_read(self, store, state_file):
        """書き込んだレコードを読み戻せる"""
        store.write("icloud", _open_record())

        assert store.read("icloud") == _open_record()
        document = json.loads(state_file.read_text(encoding="utf-8"))
        assert document["version"] == 1
        assert document["services"]["icloud"]["state"] == "open"

    def test_write_leaves_no_temp_files(self, store, state_file):
        """アトミック書き込みの一時ファイルが残らない"""
        store.write("icloud", _open_record())
        store.write("google_drive", _open_record("google_drive"))

        leftovers = [p.name for p in state_file.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    @pytest.mark.parametrize("content", ["{not json", "[]", "\x00\x01", '{"services": "broken"}'])
    def test_corrupted_file_reads_closed(self, store, state_file, content):
        """破損した状態ファイルはCLOSEDとして読む（例外にしない）"""
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(content, encoding="utf-8")

        record = store.read("icloud")
        assert record.state == CircuitState.CLOSED
        assert record.failure_count == 0

    def test_corrupted_file_is_replaced_on_update(self, store, state_file):
        """破損ファイルは次の書き込みで正常な内容に置き換わる"""
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text("{not json", encoding="utf-8")

        store.update("icloud", lambda record: record.evolve(failure_count=1))

        document = json.loads(state_file.read_text(encoding="utf-8"))
        assert document["services"]["icloud"]["failure_count"] == 1

    def test_corrupted_record_reads_closed(self, store, state_file):
        """壊れたレコードだけがCLOSEDになり、他のレコードは保たれる"""
        store.write("google_drive", _open_record("google_drive"))
        document = json.loads(state_file.read_text(encoding="utf-8"))
        document["services"]["icloud"] = {"state": "exploded", "failure_count": "many"}
        state_file.write_text(json.dumps(document), encoding="utf-8")

        assert store.read("icloud").state == CircuitState.CLOSED
        assert store.read("google_drive").state == CircuitState.OPEN

    def test_deleted_file_reads_closed(self, store, state_file):
        """状態ファイルが削除されてもCLOSEDとして読む"""
        store.write("icloud", _open_record())
        state_file.unlink()

        assert store.read("icloud").state == CircuitState.CLOSED

    def test_update_without_change_does_not_write(self, store, state_file):
        """変更なしの更新はファイルを作らない"""
        record = store.update("icloud", lambda record: None)

        assert record.state == CircuitState.CLOSED
        assert not state_file.exists()

    def test_lock_timeout_raises_store_unavailable(self, store):
        """ロックが取れない書き込みはStoreUnavailableError"""
        with FileLock(store.lock_file, timeout=0):
            with pytest.raises(StoreUnavailableError):
                store.write("icloud", _open_record())

    def test_lock_timeout_read_fails_closed(self, store):
        """ロックが取れない読み込みはCLOSEDを返す"""
        store.write("icloud", _open_record())
        with FileLock(store.lock_file, timeout=0):
            assert store.read("icloud").state == CircuitState.CLOSED

    def test_write_failure_retries_then_raises(self, store, monkeypatch):
        """書き込み失敗は再試行のうえStoreUnavailableError"""
        calls = []

        def failing_save(services):
            calls.append(services)
            raise OSError("Read-only file system")

        monkeypatch.setattr(store, "_save_raw", failing_save)

        with pytest.raises(StoreUnavailableError):
            store.write("icloud", _open_record())
        assert len(calls) == store.write_retries

    def test_reset(self, store):
        """リセットでCLOSED・失敗0になる"""
        store.write("icloud", _open_record())
        record = store.reset("icloud", NOW)

        assert record == ServiceCircuitRecord.closed("icloud", NOW)
        assert store.read("icloud") == record

    def test_reset_all(self, store):
        """全レコードをリセット"""
        store.write("icloud", _open_record())
        store.write("google_drive", _open_record("google_drive"))

        records = store.reset_all(NOW)

        assert [r.service_id for r in records] == ["google_drive", "icloud"]
        assert all(r.state == CircuitState.CLOSED for r in store.read_all().values())

    def test_reset_all_empty(self, store, state_file):
        """レコードが無ければ何もしない"""
        assert store.reset_all(NOW) == []
        assert not state_file.exists()

    def test_stores_share_state_through_file(self, store, state_file):
        """別インスタンス（別プロセス相当）から同じ状態が見える"""
        store.write("icloud", _open_record())
        other = FileCircuitBreakerStore(state_file)

        assert other.read("icloud").state == CircuitState.OPEN

    def test_concurrent_updates_are_not_lost(self, state_file):
        """別々のストア（別々のファイルロック）からの同時更新で失敗数が失われない"""
        workers, increments = 4, 25
        errors = []
        start = threading.Barrier(workers)

        def increment():
            worker_store = FileCircuitBreakerStore(state_file, lock_timeout=60)
            try:
                start.wait()
                for _ in range(increments):
                    worker_store.update(
                        "icloud",
                        lambda record: record.evolve(failure_count=record.failure_count + 1),
                    )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=increment) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=120)

        assert errors == []
        document = json.loads(state_file.read_text(encoding="utf-8"))
        assert document["services"]["icloud"]["failure_count"] == workers * increments
        assert FileCircuitBreakerStore(state_file).read("icloud").failure_count == workers * increments
        assert list(state_file.parent.glob("*.tmp")) == []


class TestInMemoryCircuitBreakerStore:
    """InMemoryCircuitBreakerStoreのテストクラス"""

    def test_initial_services(self):
        store = InMemoryCircuitBreakerStore({"icloud": _open_record().to_dict()})
        assert store.read("icloud").state == CircuitState.OPEN

    def test_dump_is_a_copy(self):
        store = InMemoryCircuitBreakerStore()
        store.write("icloud", _open_record())

        dumped = store.dump()
        dumped["icloud"]["state"] = "closed"

        assert store.read("icloud").state == CircuitState.OPEN
