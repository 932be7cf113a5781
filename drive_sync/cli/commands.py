"""
Drive Sync System - CLI Commands
個別コマンドの実装
"""

import json
import yaml
import click
import sys
from typing import List, Optional

from ..core.sync_reliability import SyncReliabilityManager
from ..error_handling.circuit_store import CircuitState
from ..error_handling.error_classifier import ErrorClassifier
from ..error_handling.error_policy import get_policy, get_policy_table
from ..exceptions import DriveSyncException

STATE_ICONS = {
    CircuitState.CLOSED.value: "🟢",
    CircuitState.HALF_OPEN.value: "🟡",
    CircuitState.OPEN.value: "🔴",
}


def _get_manager(ctx) -> SyncReliabilityManager:
    """コンテキストから信頼性マネージャーを取得（初回のみ生成）"""
    manager = ctx.obj.get('manager')
    if manager is None:
        manager = SyncReliabilityManager(ctx.obj['registry'])
        ctx.obj['manager'] = manager
        ctx.call_on_close(manager.close)
    return manager


def _dump(data, output_format: str) -> None:
    if output_format == 'yaml':
        click.echo(yaml.dump(data, allow_unicode=True, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, ensure_ascii=False, indent=2))


def run_command(ctx, services: List[str], deadline: Optional[float], output_format: str) -> None:
    """同期サイクル実行コマンド"""
    try:
        manager = _get_manager(ctx)

        if output_format == 'table':
            click.echo("🔄 同期サイクルを実行しています...")

        results = manager.run_all(services or None, deadline)

        if output_format == 'json':
            _dump([result.to_dict() for result in results], 'json')
        else:
            if not results:
                click.echo("同期対象のサービスがありません。")
            for result in results:
                if result.outcome.is_skip:
                    icon = "⏭️ "
                elif result.requires_attention:
                    icon = "❌"
                else:
                    icon = "✅"
                click.echo(f"{icon} {result.service_id}: {result.outcome.value} "
                           f"(attempts: {len(result.attempts)}, circuit: {result.circuit_state})")
                if ctx.obj['verbose'] or result.requires_attention:
                    click.echo(f"   {result.message}")

        if any(result.requires_attention for result in results):
            sys.exit(1)

    except DriveSyncException as e:
        click.echo(f"❌ 同期の実行に失敗しました: {e}", err=True)
        sys.exit(1)


def status_command(ctx, output_format: str) -> None:
    """サーキット状態確認コマンド"""
    try:
        manager = _get_manager(ctx)
        report = manager.status_report()

        if output_format in ('json', 'yaml'):
            _dump(report, output_format)
            return

        click.echo("🔍 Drive Sync サーキットブレーカー状態")
        click.echo("=" * 50)

        for service in report['services']:
            icon = STATE_ICONS.get(service['state'], "⚪")
            name = service['display_name'] or service['service_id']
            click.echo(f"\n{icon} {name} [{service['service_id']}]")
            click.echo(f"  状態: {service['state']}")
            click.echo(f"  連続失敗: {service['failure_count']}/{service['failure_threshold']}")
            if service['error_type']:
                click.echo(f"  最終エラー種別: {service['error_type']}")
            if service['last_failure_time']:
                click.echo(f"  最終失敗: {service['last_failure_time']}")
            if service['time_until_next_attempt_seconds'] is not None:
                click.echo(f"  次回試行まで: {service['time_until_next_attempt_seconds']:.0f}秒")
            if not service['enabled']:
                click.echo("  (無効)")

        if report['open_circuits']:
            click.echo(f"\n⚠️  対応が必要なサービス: {', '.join(report['open_circuits'])}")
            click.echo("   原因を解消したら 'drive-sync reset SERVICE' でリセットできます")

    except DriveSyncException as e:
        click.echo(f"❌ 状態取得エラー: {e}", err=True)
        sys.exit(1)


def reset_command(ctx, service_id: str) -> None:
    """サーキットリセットコマンド"""
    try:
        manager = _get_manager(ctx)
        manager.registry.require_service(service_id)
        manager.reset(service_id)
        click.echo(f"✅ {service_id} のサーキットをリセットしました")

    except DriveSyncException as e:
        click.echo(f"❌ リセットに失敗しました: {e}", err=True)
        sys.exit(1)


def reset_all_command(ctx) -> None:
    """全サーキットリセットコマンド"""
    try:
        manager = _get_manager(ctx)
        records = manager.reset_all()
        if records:
            click.echo(f"✅ {len(records)}個のサーキットをリセットしました")
        else:
            click.echo("リセット対象のサーキットはありません")

    except DriveSyncException as e:
        click.echo(f"❌ リセットに失敗しました: {e}", err=True)
        sys.exit(1)


def policies_command(output_format: str) -> None:
    """エラーポリシー表示コマンド"""
    table = get_policy_table()

    if output_format in ('json', 'yaml'):
        _dump(table, output_format)
        return

    click.echo("📋 エラーカテゴリ別ポリシー")
    click.echo("=" * 50)
    for category, policy in table.items():
        manual = "" if policy['recovery_actions'] else " (手動介入)"
        click.echo(f"\n• {category}{manual}")
        click.echo(f"  閾値: {policy['failure_threshold']}回 / リセット: {policy['reset_timeout']}秒")
        click.echo(f"  重要度: {policy['severity']}")
        actions = " → ".join(policy['recovery_actions']) or "なし"
        click.echo(f"  復旧アクション: {actions}")


def classify_command(exit_status: int, output: str) -> None:
    """エラー分類コマンド"""
    category, rule = ErrorClassifier().classify_detailed(exit_status, output)
    policy = get_policy(category)

    click.echo(f"カテゴリ: {category.value}")
    click.echo(f"一致ルール: {rule}")
    click.echo(f"閾値: {policy.failure_threshold}回 / リセット: {policy.reset_timeout}秒")
    actions = " → ".join(action.value for action in policy.recovery_actions) or "なし"
    click.echo(f"復旧アクション: {actions}")


def history_command(ctx, service_id: str, limit: int) -> None:
    """同期履歴表示コマンド"""
    try:
        manager = _get_manager(ctx)
        manager.registry.require_service(service_id)
        entries = manager.history.recent(service_id, limit)

        if not entries:
            click.echo(f"{service_id} の同期履歴はありません。")
            return

        click.echo(f"\n📜 {service_id} の同期履歴 (最新{len(entries)}件)")
        click.echo("-" * 50)
        for entry in entries:
            icon = "✅" if entry.status == "success" else "❌"
            category = f" [{entry.category}]" if entry.category else ""
            click.echo(f"{icon} {entry.timestamp} #{entry.attempt} exit={entry.exit_status} "
                       f"{entry.duration:.1f}s{category}")

        failures = manager.history.consecutive_failures(service_id)
        if failures:
            click.echo(f"\n連続失敗: {failures}回")

    except DriveSyncException as e:
        click.echo(f"❌ 履歴取得エラー: {e}", err=True)
        sys.exit(1)
