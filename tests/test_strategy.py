"""戦略選択のテスト。"""

from __future__ import annotations

import pytest

from quotagov import AdaptiveStrategy, QuotaState, compute_strategy, config_for
from quotagov.strategy import quota_ratio, quota_ratios


def _state(requests: int, tokens: int) -> QuotaState:
    return QuotaState(
        requests_remaining_rpd=requests,
        requests_limit_rpd=14400,
        tokens_remaining_tpm=tokens,
        tokens_limit_tpm=6000,
    )


def test_full_quota_is_aggressive() -> None:
    state = _state(14400, 6000)

    assert compute_strategy(state) == AdaptiveStrategy.AGGRESSIVE
    assert config_for(AdaptiveStrategy.AGGRESSIVE).delay_ms == 0


def test_ratio_exactly_at_threshold_falls_to_next_tier() -> None:
    assert compute_strategy(_state(10080, 6000)) == AdaptiveStrategy.MODERATE
    assert compute_strategy(_state(14400, 1800)) == AdaptiveStrategy.CONSERVATIVE
    assert compute_strategy(_state(1440, 6000)) == AdaptiveStrategy.CRITICAL


def test_tokens_low_requests_high_selects_conservative() -> None:
    state = _state(13000, 1200)

    assert quota_ratios(state) == pytest.approx((13000 / 14400, 0.2))
    assert quota_ratio(state) == pytest.approx(0.2)
    assert compute_strategy(state) == AdaptiveStrategy.CONSERVATIVE
    assert config_for(compute_strategy(state)).delay_ms == 500


def test_requests_nearly_exhausted_selects_critical() -> None:
    state = _state(500, 6000)

    strategy = compute_strategy(state)

    assert strategy == AdaptiveStrategy.CRITICAL
    config = config_for(strategy)
    assert config.delay_ms == 2000
    assert config.max_batch_size == 5
    assert config.skip_rate_limit_check is True


def test_zero_limit_counts_as_exhausted() -> None:
    state = QuotaState(requests_limit_rpd=0, requests_remaining_rpd=0)

    assert compute_strategy(state) == AdaptiveStrategy.CRITICAL


@pytest.mark.parametrize(
    ("strategy", "delay_ms", "batch", "skip"),
    [
        ("aggressive", 0, 20, False),
        ("moderate", 100, 15, False),
        ("conservative", 500, 10, False),
        ("critical", 2000, 5, True),
    ],
)
def test_config_table(strategy: str, delay_ms: int, batch: int, skip: bool) -> None:
    config = config_for(strategy)

    assert config.delay_ms == delay_ms
    assert config.max_batch_size == batch
    assert config.skip_rate_limit_check is skip


def test_unknown_strategy_is_rejected() -> None:
    with pytest.raises(ValueError):
        config_for("reckless")
