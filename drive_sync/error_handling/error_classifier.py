"""
Drive Sync System - Error Classifier
同期失敗の終了コードと出力からエラーカテゴリを判定
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Pattern, Sequence, Tuple

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """エラー重要度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """エラーカテゴリ"""
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    QUOTA = "quota"
    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PARTIAL_SYNC = "partial_sync"

    @classmethod
    def from_value(cls, value: Optional[str]) -> Optional["ErrorCategory"]:
        """文字列からカテゴリを取得（不明な値はNone）"""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# timeout(1) と SIGKILL、および subprocess が返す負のシグナル番号
TIMEOUT_EXIT_STATUSES = frozenset({124, 137, -9, -15})
# 実行不能 / コマンドが存在しない
MISSING_TOOL_EXIT_STATUSES = frozenset({126, 127})
# Unison: 一部のファイルが同期できなかった
PARTIAL_SYNC_EXIT_STATUS = 3


@dataclass(frozen=True)
class ClassificationRule:
    """出力テキスト用の分類ルール"""
    name: str
    category: ErrorCategory
    patterns: Tuple[Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns)


# 優先度順。先に一致したルールが採用される
DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="authentication",
        category=ErrorCategory.AUTHENTICATION,
        patterns=_compile(
            r"permission denied",
            r"operation not permitted",
            r"unauthori[sz]ed",
            r"\bauth(entication|orization)?\b",
            r"credential",
            r"token (has )?expired",
            r"not signed in",
            r"\bforbidden\b",
        ),
    ),
    ClassificationRule(
        name="conflict",
        category=ErrorCategory.CONFLICT,
        patterns=_compile(
            r"conflict",
            r"deadlock",
            r"\blocked\b",
            r"lock file",
            r"archive.*(corrupt|inconsistent)",
        ),
    ),
    ClassificationRule(
        name="quota",
        category=ErrorCategory.QUOTA,
        patterns=_compile(
            r"\bquota\b",
            r"no space left",
            r"disk (is )?full",
            r"out of (disk )?space",
            r"storage (is )?full",
            r"insufficient (storage|space)",
            r"limit exceeded",
        ),
    ),
    ClassificationRule(
        name="network",
        category=ErrorCategory.NETWORK,
        patterns=_compile(
            r"connection refused",
            r"network is unreachable",
            r"connection reset",
            r"could not resolve host",
            r"name resolution",
            r"timed out",
        ),
    ),
    ClassificationRule(
        name="configuration",
        category=ErrorCategory.CONFIGURATION,
        patterns=_compile(
            r"profile .*not found",
            r"no such profile",
            r"root .*does not exist",
            r"invalid argument",
            r"^usage:",
        ),
    ),
    ClassificationRule(
        name="partial_sync",
        category=ErrorCategory.PARTIAL_SYNC,
        patterns=_compile(
            r"synchronization incomplete",
            r"\b[1-9]\d* failed\b",
        ),
    ),
)


class ErrorClassifier:
    """同期エラー分類器

    分類は全域的で、常にただ一つのカテゴリを返す。
    どのルールにも一致しない場合は ``TRANSIENT``。
    """

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None):
        self.rules: Tuple[ClassificationRule, ...] = tuple(rules or DEFAULT_RULES)

    def classify(self, exit_status: int, captured_output: Optional[str]) -> ErrorCategory:
        """終了コードと出力からエラーカテゴリを判定"""
        category, _ = self.classify_detailed(exit_status, captured_output)
        return category

    def classify_detailed(self,
                          exit_status: int,
                          captured_output: Optional[str]) -> Tuple[ErrorCategory, str]:
        """
        エラーカテゴリと一致したルール名を返す

        Args:
            exit_status: 同期サブプロセスの終了コード
            captured_output: 標準出力と標準エラーを結合したテキスト

        Returns:
            (カテゴリ, ルール名) のタプル
        """
        if exit_status in TIMEOUT_EXIT_STATUSES:
            return self._result(ErrorCategory.NETWORK, f"exit_status:{exit_status}")

        if exit_status in MISSING_TOOL_EXIT_STATUSES:
            return self._result(ErrorCategory.PERMANENT, f"exit_status:{exit_status}")

        text = captured_output or ""
        for rule in self.rules:
            if rule.matches(text):
                return self._result(rule.category, rule.name)

        if exit_status == PARTIAL_SYNC_EXIT_STATUS:
            return self._result(ErrorCategory.PARTIAL_SYNC, f"exit_status:{exit_status}")

        return self._result(ErrorCategory.TRANSIENT, "default")

    @staticmethod
    def _result(category: ErrorCategory, rule_name: str) -> Tuple[ErrorCategory, str]:
        logger.debug(f"Classified sync failure as {category.value} (rule: {rule_name})")
        return category, rule_name
