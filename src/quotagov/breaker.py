"""サーキットブレーカーの判定関数。

状態の書き込みはガバナーが行う。ここでは読み取った状態に対する判定のみを扱う。
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from quotagov.config import GovernorSettings
from quotagov.enums import CircuitState
from quotagov.types import QuotaState

_DEFAULT_SETTINGS = GovernorSettings()


def utcnow() -> datetime:
    """タイムゾーン付きの現在時刻（UTC）を返す。"""

    return datetime.now(timezone.utc)


def _elapsed_ms(opened_at: datetime, now: datetime) -> float:
    if opened_at.tzinfo is None:
        opened_at = opened_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - opened_at).total_seconds() * 1000.0


def should_open_circuit(state: QuotaState, *, settings: GovernorSettings | None = None) -> bool:
    """サーキットを open にすべきか判定する。

    失敗の有無に関わらず、残クォータの枯渇が近いことだけでも遮断理由になる。

    Args:
        state: クォータ状態。
        settings: 閾値設定。省略時は既定値。

    Returns:
        連続失敗が上限以上、残トークン不足、残要求数不足のいずれかならTrue。
    """

    conf = settings or _DEFAULT_SETTINGS
    return (
        state.consecutive_failures >= conf.max_consecutive_failures
        or state.tokens_remaining_tpm < conf.min_tokens_remaining
        or state.requests_remaining_rpd < conf.min_requests_remaining
    )


def can_try_half_open(
    state: QuotaState,
    *,
    now: datetime | None = None,
    settings: GovernorSettings | None = None,
) -> bool:
    """open から half-open への試行が許されるか判定する。"""

    if state.circuit_state != CircuitState.OPEN or state.circuit_opened_at is None:
        return False
    conf = settings or _DEFAULT_SETTINGS
    current = now or utcnow()
    return _elapsed_ms(state.circuit_opened_at, current) >= conf.circuit_breaker_timeout_ms


def seconds_until_half_open(
    state: QuotaState,
    *,
    now: datetime | None = None,
    settings: GovernorSettings | None = None,
) -> int:
    """half-open 試行が可能になるまでの秒数（切り上げ）を返す。

    open 以外の状態では0を返す。``circuit_opened_at`` が欠けた open 状態では
    タイムアウト全体を返す。
    """

    if state.circuit_state != CircuitState.OPEN:
        return 0
    conf = settings or _DEFAULT_SETTINGS
    if state.circuit_opened_at is None:
        return math.ceil(conf.circuit_breaker_timeout_ms / 1000)
    current = now or utcnow()
    wait_ms = conf.circuit_breaker_timeout_ms - _elapsed_ms(state.circuit_opened_at, current)
    return max(0, math.ceil(wait_ms / 1000))
