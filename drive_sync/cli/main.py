"""
Drive Sync System - CLI Main Entry Point
メインCLIエントリーポイント
"""

import click
import logging
import sys

from ..core.service_registry import ServiceRegistry
from ..exceptions import DriveSyncException
from .commands import (
    run_command,
    status_command,
    reset_command,
    reset_all_command,
    policies_command,
    classify_command,
    history_command
)


def setup_logging(level: str = "INFO") -> None:
    """ログ設定の初期化"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='詳細ログを表示')
@click.option('--quiet', '-q', is_flag=True, help='エラーのみ表示')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='設定ファイル（YAML/JSON）のパス')
@click.pass_context
def main(ctx, verbose, quiet, config_path):
    """
    Drive Sync CLI

    クラウドドライブ同期の信頼性レイヤー（サーキットブレーカー・自動復旧）
    """
    if quiet:
        log_level = "ERROR"
    elif verbose:
        log_level = "DEBUG"
    else:
        log_level = "INFO"

    setup_logging(log_level)

    ctx.ensure_object(dict)

    try:
        registry = ServiceRegistry(config_path)
        registry.load_config()
    except DriveSyncException as e:
        click.echo(f"Error: 設定の読み込みに失敗しました: {e}", err=True)
        sys.exit(1)

    ctx.obj['registry'] = registry
    ctx.obj['verbose'] = verbose


@main.command()
@click.argument('services', nargs=-1)
@click.option('--deadline', type=float, help='1サイクルの上限（秒）')
@click.option('--format', 'output_format',
              type=click.Choice(['table', 'json']),
              default='table', help='出力形式')
@click.pass_context
def run(ctx, services, deadline, output_format):
    """同期サイクルの実行（未指定なら有効な全サービス）"""
    run_command(ctx, list(services), deadline, output_format)


@main.command()
@click.option('--format', 'output_format',
              type=click.Choice(['table', 'json', 'yaml']),
              default='table', help='出力形式')
@click.pass_context
def status(ctx, output_format):
    """サーキットブレーカーの状態確認"""
    status_command(ctx, output_format)


@main.command()
@click.argument('service_id', type=str)
@click.pass_context
def reset(ctx, service_id):
    """サーキットの手動リセット"""
    reset_command(ctx, service_id)


@main.command('reset-all')
@click.confirmation_option(prompt='すべてのサーキットをリセットしますか？')
@click.pass_context
def reset_all(ctx):
    """すべてのサーキットをリセット"""
    reset_all_command(ctx)


@main.command()
@click.option('--format', 'output_format',
              type=click.Choice(['table', 'json', 'yaml']),
              default='table', help='出力形式')
def policies(output_format):
    """エラーカテゴリ別ポリシーの表示"""
    policies_command(output_format)


@main.command()
@click.argument('exit_status', type=int)
@click.argument('output', type=str, default='')
def classify(exit_status, output):
    """終了コードと出力からエラーカテゴリを判定"""
    classify_command(exit_status, output)


@main.command()
@click.argument('service_id', type=str)
@click.option('--limit', type=int, default=20, help='表示件数')
@click.pass_context
def history(ctx, service_id, limit):
    """同期履歴の表示"""
    history_command(ctx, service_id, limit)


if __name__ == '__main__':
    main()
