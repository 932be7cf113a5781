"""
Drive Sync System - テスト共通フィクスチャ
"""

import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from drive_sync.error_handling.circuit_breaker import CircuitBreaker
from drive_sync.error_handling.circuit_store import InMemoryCircuitBreakerStore


class FakeClock:
    """テスト用に進められるUTC時計"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryCircuitBreakerStore()


@pytest.fixture
def breaker(memory_store, clock):
    return CircuitBreaker(memory_store, clock=clock)


@pytest.fixture
def make_unison(tmp_path):
    """固定の出力と終了コードを返す偽のunisonスクリプトを作成"""

    def _make(exit_status: int = 0, output: str = "", name: str = "fake_unison") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            "#!/bin/sh\n"
            f"printf '%s\\n' '{output}'\n"
            'echo "args: $@"\n'
            f"exit {exit_status}\n",
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


@pytest.fixture
def make_config(tmp_path):
    """一時ディレクトリ内で完結する設定ファイルを作成"""

    def _make(unison_binary: str = "unison", **reliability) -> Path:
        hub = tmp_path / "Sync_Hub"
        icloud = tmp_path / "iCloud"
        gdrive = tmp_path / "GoogleDrive"
        for path in (hub, icloud, gdrive):
            path.mkdir(parents=True, exist_ok=True)

        settings = {
            "state_file": str(tmp_path / "state" / "circuit_breaker_state.json"),
            "log_dir": str(tmp_path / "logs"),
            "backup_dir": str(tmp_path / "backups"),
            "lock_dir": str(tmp_path / "locks"),
            "profile_dir": str(tmp_path / "unison"),
            "unison_binary": unison_binary,
        }
        settings.update(reliability)

        config = {
            "version": "1.0.0",
            "services": {
                "icloud": {
                    "display_name": "iCloud Drive",
                    "sync_root": str(hub),
                    "remote_root": str(icloud),
                    "profile_name": "icloud",
                },
                "google_drive": {
                    "display_name": "Google Drive",
                    "sync_root": str(hub),
                    "remote_root": str(gdrive),
                    "profile_name": "google_drive",
                },
            },
            "reliability": settings,
        }

        config_path = tmp_path / "config.yaml"
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config, f, allow_unicode=True, sort_keys=False)
        return config_path

    return _make
