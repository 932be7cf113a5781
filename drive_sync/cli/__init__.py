"""
Drive Sync System - CLI Interface
コマンドラインインターフェース
"""

from .main import main
from .commands import (
    run_command,
    status_command,
    reset_command,
    reset_all_command,
    policies_command,
    classify_command,
    history_command
)

__all__ = [
    "main",
    "run_command",
    "status_command",
    "reset_command",
    "reset_all_command",
    "policies_command",
    "classify_command",
    "history_command"
]
