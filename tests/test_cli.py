"""
Drive Sync System - CLI Tests
コマンドラインインターフェースのテスト
"""

import json

import pytest
from click.testing import CliRunner

from drive_sync.cli.main import main


@pytest.fixture
def cli():
    return CliRunner()


def _invoke(cli, config_path, *args):
    return cli.invoke(main, ["--quiet", "--config", str(config_path), *args])


class TestCliCommands:
    """CLIコマンドのテストクラス"""

    def test_policies(self, cli, tmp_path):
        """ポリシーテーブルの表示"""
        result = _invoke(cli, tmp_path / "missing.yaml", "policies")

        assert result.exit_code == 0
        assert "quota" in result.output
        assert "cleanup_space → compress_logs" in result.output

    def test_policies_json(self, cli, tmp_path):
        result = _invoke(cli, tmp_path / "missing.yaml", "policies", "--format", "json")

        table = json.loads(result.stdout)
        assert table["network"]["failure_threshold"] == 6

    def test_classify(self, cli, tmp_path):
        """終了コード127は恒久的エラー"""
        result = _invoke(cli, tmp_path / "missing.yaml", "classify", "127")

        assert result.exit_code == 0
        assert "カテゴリ: permanent" in result.output
        assert "一致ルール: exit_status:127" in result.output

    def test_classify_with_output(self, cli, tmp_path):
        result = _invoke(cli, tmp_path / "missing.yaml", "classify", "1", "No space left on device")
        assert "カテゴリ: quota" in result.output

    def test_status_table(self, cli, make_config):
        result = _invoke(cli, make_config(), "status")

        assert result.exit_code == 0
        assert "🟢 iCloud Drive [icloud]" in result.output
        assert "🟢 Google Drive [google_drive]" in result.output

    def test_status_json(self, cli, make_config):
        result = _invoke(cli, make_config(), "status", "--format", "json")

        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert [s["service_id"] for s in report["services"]] == ["google_drive", "icloud"]
        assert report["open_circuits"] == []

    def test_run_success(self, cli, make_config, make_unison):
        """同期成功なら終了コード0"""
        config_path = make_config(unison_binary=str(make_unison(0, "Synchronization complete")))

        result = _invoke(cli, config_path, "run", "icloud")

        assert result.exit_code == 0
        assert "✅ icloud: success" in result.output

    def test_run_permanent_failure(self, cli, make_config, make_unison):
        """手動介入が必要な結果は終了コード1"""
        config_path = make_config(unison_binary=str(make_unison(127, "unison: not found")))

        result = _invoke(cli, config_path, "run", "icloud", "--format", "json")

        assert result.exit_code == 1
        cycles = json.loads(result.stdout)
        assert cycles[0]["outcome"] == "failed_manual"
        assert cycles[0]["circuit_state"] == "open"

        status = json.loads(_invoke(cli, config_path, "status", "--format", "json").stdout)
        assert status["open_circuits"] == ["icloud"]

    def test_run_unknown_service(self, cli, make_config):
        result = _invoke(cli, make_config(), "run", "dropbox")

        assert result.exit_code == 1
        assert "dropbox" in result.output

    def test_reset(self, cli, make_config, make_unison):
        """リセット後はサーキットがCLOSEDに戻る"""
        config_path = make_config(unison_binary=str(make_unison(127)))
        _invoke(cli, config_path, "run", "icloud")

        result = _invoke(cli, config_path, "reset", "icloud")

        assert result.exit_code == 0
        assert "icloud のサーキットをリセットしました" in result.output
        status = json.loads(_invoke(cli, config_path, "status", "--format", "json").stdout)
        assert status["open_circuits"] == []

    def test_reset_unknown_service(self, cli, make_config):
        result = _invoke(cli, make_config(), "reset", "dropbox")
        assert result.exit_code == 1

    def test_reset_all(self, cli, make_config, make_unison):
        config_path = make_config(unison_binary=str(make_unison(127)))
        _invoke(cli, config_path, "run")

        result = _invoke(cli, config_path, "reset-all", "--yes")

        assert result.exit_code == 0
        assert "2個のサーキットをリセットしました" in result.output

    def test_reset_all_nothing_to_reset(self, cli, make_config):
        result = _invoke(cli, make_config(), "reset-all", "--yes")
        assert "リセット対象のサーキットはありません" in result.output

    def test_history(self, cli, make_config, make_unison):
        """実行した試行が履歴に表示される"""
        config_path = make_config(unison_binary=str(make_unison(0)))
        _invoke(cli, config_path, "run", "icloud")

        result = _invoke(cli, config_path, "history", "icloud")

        assert result.exit_code == 0
        assert "icloud の同期履歴" in result.output
        assert "exit=0" in result.output

    def test_history_empty(self, cli, make_config):
        result = _invoke(cli, make_config(), "history", "google_drive")
        assert "google_drive の同期履歴はありません。" in result.output

    def test_invalid_config(self, cli, tmp_path):
        """設定ファイルが壊れていれば終了コード1"""
        config_path = tmp_path / "config.yaml"
        config_path.write_text("services: [unclosed", encoding="utf-8")

        result = _invoke(cli, config_path, "status")

        assert result.exit_code == 1
