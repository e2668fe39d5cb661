"""残クォータ比率からの戦略選択。入出力を伴わない純粋関数のみ。"""

from __future__ import annotations

from quotagov.enums import AdaptiveStrategy
from quotagov.types import AdaptiveConfig, QuotaState

AGGRESSIVE_THRESHOLD = 0.70
MODERATE_THRESHOLD = 0.30
CONSERVATIVE_THRESHOLD = 0.10

_CONFIGS: dict[AdaptiveStrategy, AdaptiveConfig] = {
    AdaptiveStrategy.AGGRESSIVE: AdaptiveConfig(delay_ms=0, max_batch_size=20, skip_rate_limit_check=False),
    AdaptiveStrategy.MODERATE: AdaptiveConfig(delay_ms=100, max_batch_size=15, skip_rate_limit_check=False),
    AdaptiveStrategy.CONSERVATIVE: AdaptiveConfig(delay_ms=500, max_batch_size=10, skip_rate_limit_check=False),
    AdaptiveStrategy.CRITICAL: AdaptiveConfig(delay_ms=2000, max_batch_size=5, skip_rate_limit_check=True),
}


def _ratio(remaining: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return remaining / limit


def quota_ratios(state: QuotaState) -> tuple[float, float]:
    """要求数とトークンの残比率を返す。"""

    return (
        _ratio(state.requests_remaining_rpd, state.requests_limit_rpd),
        _ratio(state.tokens_remaining_tpm, state.tokens_limit_tpm),
    )


def quota_ratio(state: QuotaState) -> float:
    """要求数とトークンの残比率のうち小さい方を返す。"""

    return min(quota_ratios(state))


def compute_strategy(state: QuotaState) -> AdaptiveStrategy:
    """クォータ状態から戦略を選ぶ。

    各閾値は下限を含まない。比率がちょうど0.70なら moderate になる。

    Args:
        state: クォータ状態。

    Returns:
        選択した戦略。
    """

    min_ratio = quota_ratio(state)
    if min_ratio > AGGRESSIVE_THRESHOLD:
        return AdaptiveStrategy.AGGRESSIVE
    if min_ratio > MODERATE_THRESHOLD:
        return AdaptiveStrategy.MODERATE
    if min_ratio > CONSERVATIVE_THRESHOLD:
        return AdaptiveStrategy.CONSERVATIVE
    return AdaptiveStrategy.CRITICAL


def config_for(strategy: AdaptiveStrategy | str) -> AdaptiveConfig:
    """戦略に対応する固定ポリシーを返す。"""

    return _CONFIGS[AdaptiveStrategy(strategy)]
