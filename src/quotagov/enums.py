"""列挙型定義。"""

from __future__ import annotations

from enum import StrEnum


class CircuitState(StrEnum):
    """サーキットブレーカー状態。

    Attributes:
        CLOSED: 通常状態。呼び出しを通す。
        OPEN: 遮断状態。送信せずに拒否する。
        HALF_OPEN: 回復確認のための試行1件を許可する状態。
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class AdaptiveStrategy(StrEnum):
    """残クォータ比率から選ぶスロットリング段階。

    Attributes:
        AGGRESSIVE: 残70%超。待機なし。
        MODERATE: 残30%超70%以下。
        CONSERVATIVE: 残10%超30%以下。
        CRITICAL: 残10%以下。
    """

    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"
    CRITICAL = "critical"
