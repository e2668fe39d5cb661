"""設定値定義。"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

STATE_SCHEMA_VERSION = "1.0"

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_USER_AGENT = "quotagov/0.1.0"
DEFAULT_MODEL = "llama-3.1-8b-instant"
DEFAULT_MAX_TOKENS = 300
DEFAULT_TEMPERATURE = 0.1

REQUESTS_PER_DAY = 14400
TOKENS_PER_MINUTE = 6000
CIRCUIT_BREAKER_TIMEOUT_MS = 60000
MAX_CONSECUTIVE_FAILURES = 3
MIN_TOKENS_REMAINING = 100
MIN_REQUESTS_REMAINING = 10
DEFAULT_RETRY_AFTER_SECONDS = 60

API_KEY_ENV = "GROQ_API_KEY"
ENV_PREFIX = "QUOTAGOV_"


@dataclass(slots=True)
class GovernorSettings:
    """ガバナー共通設定。

    Attributes:
        base_url: プロバイダAPIのベースURL。
        api_key: Bearer認証に使うAPIキー。
        timeout: 送信1回あたりのタイムアウト秒。
        user_agent: User-Agent。
        default_model: 要求でモデル未指定時のモデル名。
        default_max_tokens: 要求で未指定時の最大生成トークン数。
        default_temperature: 要求で未指定時のtemperature。
        requests_per_day: ヘッダ欠落時に使う1日あたり要求数上限。
        tokens_per_minute: ヘッダ欠落時に使う1分あたりトークン上限。
        circuit_breaker_timeout_ms: open から half-open 試行までの待機ミリ秒。
        max_consecutive_failures: 遮断に至る連続失敗回数。
        min_tokens_remaining: これ未満の残トークンで遮断する。
        min_requests_remaining: これ未満の残要求数で遮断する。
        default_retry_after_seconds: 429でRetry-Afterが無い場合の秒数。
        state_file: CLIが使う状態ファイルの既定パス。
    """

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    default_model: str = DEFAULT_MODEL
    default_max_tokens: int = DEFAULT_MAX_TOKENS
    default_temperature: float = DEFAULT_TEMPERATURE
    requests_per_day: int = REQUESTS_PER_DAY
    tokens_per_minute: int = TOKENS_PER_MINUTE
    circuit_breaker_timeout_ms: int = CIRCUIT_BREAKER_TIMEOUT_MS
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    min_tokens_remaining: int = MIN_TOKENS_REMAINING
    min_requests_remaining: int = MIN_REQUESTS_REMAINING
    default_retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS
    state_file: str | None = None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "GovernorSettings":
        """環境変数から設定を構築する。

        ``GROQ_API_KEY`` と ``QUOTAGOV_<FIELD>`` 形式の変数を読む。
        キーワード引数は環境変数より優先される。

        Args:
            environ: 参照する環境変数。省略時は ``os.environ``。
            **overrides: 明示指定する設定値。

        Returns:
            構築した設定。

        Raises:
            ValueError: 数値項目が解釈できない場合。
        """

        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        api_key = env.get(API_KEY_ENV)
        if api_key:
            values["api_key"] = api_key
        for item in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[item.name] = _coerce_env_value(item.name, raw.strip())
        values.update(overrides)
        return cls(**values)


_INT_FIELDS = {
    "default_max_tokens",
    "requests_per_day",
    "tokens_per_minute",
    "circuit_breaker_timeout_ms",
    "max_consecutive_failures",
    "min_tokens_remaining",
    "min_requests_remaining",
    "default_retry_after_seconds",
}
_FLOAT_FIELDS = {"timeout", "default_temperature"}


def _coerce_env_value(name: str, raw: str) -> Any:
    if name in _INT_FIELDS:
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} は整数で指定してください: {raw!r}") from exc
    if name in _FLOAT_FIELDS:
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} は数値で指定してください: {raw!r}") from exc
    return raw


def validate_settings(settings: GovernorSettings) -> None:
    """設定値の範囲を検証する。

    Raises:
        ValueError: 範囲外の値が含まれる場合。
    """

    if settings.timeout <= 0:
        raise ValueError("timeout は0より大きい値を指定してください。")
    if settings.requests_per_day < 1:
        raise ValueError("requests_per_day は1以上を指定してください。")
    if settings.tokens_per_minute < 1:
        raise ValueError("tokens_per_minute は1以上を指定してください。")
    if settings.circuit_breaker_timeout_ms < 0:
        raise ValueError("circuit_breaker_timeout_ms は0以上を指定してください。")
    if settings.max_consecutive_failures < 1:
        raise ValueError("max_consecutive_failures は1以上を指定してください。")
    if settings.min_tokens_remaining < 0 or settings.min_requests_remaining < 0:
        raise ValueError("min_tokens_remaining / min_requests_remaining は0以上を指定してください。")
    if settings.default_retry_after_seconds < 0:
        raise ValueError("default_retry_after_seconds は0以上を指定してください。")
    if settings.default_max_tokens < 1:
        raise ValueError("default_max_tokens は1以上を指定してください。")
