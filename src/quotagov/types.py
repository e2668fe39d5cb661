"""公開型と内部共通データ構造。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from quotagov.config import REQUESTS_PER_DAY, TOKENS_PER_MINUTE
from quotagov.enums import AdaptiveStrategy, CircuitState


@dataclass(slots=True)
class GroqQuotaInfo:
    """1レスポンス分のレート制限ヘッダ解析結果。

    Attributes:
        requests_limit_rpd: 1日あたり要求数上限。
        requests_remaining_rpd: 1日あたり残要求数。
        requests_reset_rpd: 要求数リセットまでの原文（例: ``2m59.56s``）。
        tokens_limit_tpm: 1分あたりトークン上限。
        tokens_remaining_tpm: 1分あたり残トークン数。
        tokens_reset_tpm: トークンリセットまでの原文（例: ``7.66s``）。
        retry_after: Retry-After原文。
    """

    requests_limit_rpd: int
    requests_remaining_rpd: int
    requests_reset_rpd: str | None
    tokens_limit_tpm: int
    tokens_remaining_tpm: int
    tokens_reset_tpm: str | None
    retry_after: str | None


@dataclass(slots=True)
class QuotaState:
    """永続化されるクォータ/サーキット状態。プロバイダ連携ごとに1件。

    Attributes:
        requests_remaining_rpd: 最後に観測した残要求数。
        requests_limit_rpd: 最後に観測した要求数上限。
        tokens_remaining_tpm: 最後に観測した残トークン数。
        tokens_limit_tpm: 最後に観測したトークン上限。
        avg_latency_ms: 観測レイテンシの移動平均（参考値）。
        circuit_state: サーキット状態。
        circuit_opened_at: open/half-open の間だけ設定される遷移時刻。
        consecutive_failures: 連続失敗回数。成功で0へ戻る。
        requests_reset_at: 要求数ウィンドウのリセット予定時刻。
        tokens_reset_at: トークンウィンドウのリセット予定時刻。
        updated_at: 最終更新時刻。
        version: 書き込みごとに増える版番号。
    """

    requests_remaining_rpd: int = REQUESTS_PER_DAY
    requests_limit_rpd: int = REQUESTS_PER_DAY
    tokens_remaining_tpm: int = TOKENS_PER_MINUTE
    tokens_limit_tpm: int = TOKENS_PER_MINUTE
    avg_latency_ms: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: datetime | None = None
    consecutive_failures: int = 0
    requests_reset_at: datetime | None = None
    tokens_reset_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True, slots=True)
class AdaptiveConfig:
    """戦略ごとの固定ポリシー。

    Attributes:
        delay_ms: 送信前の待機ミリ秒。
        max_batch_size: 呼び出し側がまとめて投げてよい最大件数。
        skip_rate_limit_check: 呼び出し側の追加レート確認を省略するか。
    """

    delay_ms: int
    max_batch_size: int
    skip_rate_limit_check: bool


@dataclass(slots=True)
class CompletionRequest:
    """チャット補完要求。

    未指定の項目は ``GovernorSettings`` の既定値で補われる。

    Attributes:
        messages: ``{"role": ..., "content": ...}`` の列。
        model: モデル名。
        max_tokens: 最大生成トークン数。
        temperature: temperature。
    """

    messages: list[dict[str, str]]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(slots=True)
class GovernorResult:
    """成功時の返却値。

    Attributes:
        data: デコード済みレスポンス本文。
        quota_info: 当該レスポンスのクォータ情報。
        latency_ms: 送信からの経過ミリ秒。
        strategy: 送信時に適用した戦略。
    """

    data: Any
    quota_info: GroqQuotaInfo
    latency_ms: int
    strategy: AdaptiveStrategy


@dataclass(slots=True)
class QuotaStatus:
    """監視用スナップショット。送信は伴わない。

    Attributes:
        state: 読み出したクォータ状態。
        requests_ratio: 残要求数比率。
        tokens_ratio: 残トークン比率。
        min_ratio: 上記の小さい方。
        strategy: 現在選ばれる戦略。
        config: 戦略のポリシー。
        seconds_until_half_open: open時に half-open 試行まで残る秒数。
        extras: 追加情報。
    """

    state: QuotaState
    requests_ratio: float
    tokens_ratio: float
    min_ratio: float
    strategy: AdaptiveStrategy
    config: AdaptiveConfig
    seconds_until_half_open: int
    extras: dict[str, Any] = field(default_factory=dict)
