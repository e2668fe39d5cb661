"""公開ガバナー実装。

1回の呼び出しで行う送信は必ず1回で、再試行はしない。失敗の記録とサーキット
遷移を済ませてから型付き例外を送出する。
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

import httpx

from quotagov.breaker import can_try_half_open, seconds_until_half_open, should_open_circuit, utcnow
from quotagov.config import GovernorSettings, validate_settings
from quotagov.enums import AdaptiveStrategy, CircuitState
from quotagov.errors import (
    CircuitOpenError,
    ConfigurationError,
    GovernorTimeoutError,
    GovernorTransportError,
    ProviderError,
    QuotaStateConflictError,
    RateLimitedError,
)
from quotagov.headers import parse_rate_limit_headers, parse_retry_after
from quotagov.http import (
    build_completion_payload,
    build_request_headers,
    completions_url,
    is_success_status,
    response_excerpt,
)
from quotagov.store import InMemoryQuotaStateStore, QuotaStateStore
from quotagov.strategy import compute_strategy, config_for, quota_ratios
from quotagov.types import (
    AdaptiveConfig,
    CompletionRequest,
    GovernorResult,
    GroqQuotaInfo,
    QuotaState,
    QuotaStatus,
)

logger = logging.getLogger(__name__)


def _timeout_seconds(settings: GovernorSettings) -> int:
    return math.ceil(settings.circuit_breaker_timeout_ms / 1000)


def _admit(store: QuotaStateStore, settings: GovernorSettings, now: datetime) -> QuotaState:
    """状態を読み、サーキット判定を通過した状態を返す。

    Raises:
        CircuitOpenError: 送信せずに拒否する場合。
    """

    state = store.get_quota_state()

    if state.circuit_state == CircuitState.OPEN:
        if can_try_half_open(state, now=now, settings=settings):
            try:
                state = store.update_circuit_state(CircuitState.HALF_OPEN, expected_version=state.version)
            except QuotaStateConflictError:
                latest = store.get_quota_state()
                logger.info("Half-open trial already claimed by another caller")
                raise CircuitOpenError(max(1, seconds_until_half_open(latest, now=now, settings=settings))) from None
            logger.info("Circuit transitioning to half-open")
            return state
        if state.circuit_opened_at is None:
            store.update_circuit_state(CircuitState.OPEN)
            raise CircuitOpenError(_timeout_seconds(settings))
        raise CircuitOpenError(seconds_until_half_open(state, now=now, settings=settings))

    if state.circuit_state == CircuitState.CLOSED and should_open_circuit(state, settings=settings):
        logger.error(
            "Quota near exhaustion (requests=%d, tokens=%d) - opening circuit breaker",
            state.requests_remaining_rpd,
            state.tokens_remaining_tpm,
        )
        store.update_circuit_state(CircuitState.OPEN)
        raise CircuitOpenError(_timeout_seconds(settings))

    return state


def _select(state: QuotaState) -> tuple[AdaptiveStrategy, AdaptiveConfig]:
    strategy = compute_strategy(state)
    config = config_for(strategy)
    logger.info(
        "Strategy: %s, Delay: %dms, Requests remaining: %d/%d",
        strategy,
        config.delay_ms,
        state.requests_remaining_rpd,
        state.requests_limit_rpd,
    )
    return strategy, config


def _quota_info_from_state(state: QuotaState) -> GroqQuotaInfo:
    return GroqQuotaInfo(
        requests_limit_rpd=state.requests_limit_rpd,
        requests_remaining_rpd=state.requests_remaining_rpd,
        requests_reset_rpd=None,
        tokens_limit_tpm=state.tokens_limit_tpm,
        tokens_remaining_tpm=state.tokens_remaining_tpm,
        tokens_reset_tpm=None,
        retry_after=None,
    )


def _record_failure(
    store: QuotaStateStore,
    settings: GovernorSettings,
    quota_info: GroqQuotaInfo,
    latency_ms: int,
) -> None:
    updated = store.update_quota_state(quota_info, latency_ms, False)
    if updated.circuit_state == CircuitState.HALF_OPEN:
        logger.error("Half-open trial failed - reopening circuit breaker")
        store.update_circuit_state(CircuitState.OPEN)
    elif updated.circuit_state == CircuitState.CLOSED and should_open_circuit(updated, settings=settings):
        logger.error(
            "Too many failures (%d) - opening circuit breaker",
            updated.consecutive_failures,
        )
        store.update_circuit_state(CircuitState.OPEN)


def _settle_response(
    *,
    store: QuotaStateStore,
    settings: GovernorSettings,
    response: httpx.Response,
    latency_ms: int,
    strategy: AdaptiveStrategy,
    request_url: str,
) -> GovernorResult:
    """レスポンスを分類し、状態を書き込んで結果を返す。"""

    quota_info = parse_rate_limit_headers(
        response.headers,
        requests_per_day=settings.requests_per_day,
        tokens_per_minute=settings.tokens_per_minute,
    )
    logger.info(
        "Response: %d, Latency: %dms, Tokens remaining: %d/%d",
        response.status_code,
        latency_ms,
        quota_info.tokens_remaining_tpm,
        quota_info.tokens_limit_tpm,
    )

    if response.status_code == 429:
        store.update_quota_state(quota_info, latency_ms, False)
        logger.error("Rate limited - opening circuit breaker")
        store.update_circuit_state(CircuitState.OPEN)
        retry_after = parse_retry_after(quota_info.retry_after)
        raise RateLimitedError(
            math.ceil(retry_after) if retry_after is not None else settings.default_retry_after_seconds,
            request_url=request_url,
            raw_response_excerpt=response_excerpt(response),
        )

    if not is_success_status(response.status_code):
        _record_failure(store, settings, quota_info, latency_ms)
        raise ProviderError(
            status_code=response.status_code,
            request_url=request_url,
            raw_response_excerpt=response_excerpt(response),
        )

    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        _record_failure(store, settings, quota_info, latency_ms)
        raise ProviderError(
            f"プロバイダの応答本文を解析できませんでした: {type(exc).__name__}",
            status_code=response.status_code,
            request_url=request_url,
            raw_response_excerpt=response_excerpt(response),
        ) from exc

    updated = store.update_quota_state(quota_info, latency_ms, True)
    if updated.circuit_state != CircuitState.CLOSED:
        logger.info("Request succeeded - closing circuit breaker")
        store.update_circuit_state(CircuitState.CLOSED)
    return GovernorResult(data=data, quota_info=quota_info, latency_ms=latency_ms, strategy=strategy)


def _settle_transport_failure(
    *,
    store: QuotaStateStore,
    settings: GovernorSettings,
    state: QuotaState,
    exc: Exception,
    latency_ms: int,
    request_url: str,
) -> ProviderError:
    """応答が得られなかった送信を失敗として記録し、送出すべき例外を返す。

    クォータ値は直前の状態を据え置く。
    """

    _record_failure(store, settings, _quota_info_from_state(state), latency_ms)
    if isinstance(exc, httpx.TimeoutException):
        logger.error("Request timed out after %dms", latency_ms)
        return GovernorTimeoutError(
            f"プロバイダAPIがタイムアウトしました: {exc}",
            request_url=request_url,
        )
    logger.error("Transport failure: %s", exc)
    return GovernorTransportError(str(exc), request_url=request_url)


def _build_status(
    state: QuotaState,
    settings: GovernorSettings,
    now: datetime,
) -> QuotaStatus:
    requests_ratio, tokens_ratio = quota_ratios(state)
    strategy = compute_strategy(state)
    return QuotaStatus(
        state=state,
        requests_ratio=requests_ratio,
        tokens_ratio=tokens_ratio,
        min_ratio=min(requests_ratio, tokens_ratio),
        strategy=strategy,
        config=config_for(strategy),
        seconds_until_half_open=seconds_until_half_open(state, now=now, settings=settings),
        extras={"can_try_half_open": can_try_half_open(state, now=now, settings=settings)},
    )


def _resolve_settings(
    settings: GovernorSettings | None,
    overrides: dict[str, Any],
) -> GovernorSettings:
    base = settings or GovernorSettings.from_env()
    resolved = replace(base, **{key: value for key, value in overrides.items() if value is not None})
    validate_settings(resolved)
    return resolved


def _http_client_kwargs(
    settings: GovernorSettings,
    *,
    http2: bool,
    proxy: str | None,
    limits: httpx.Limits | None,
) -> dict[str, Any]:
    client_kwargs: dict[str, Any] = {
        "timeout": settings.timeout,
        "http2": http2,
    }
    if proxy is not None:
        client_kwargs["proxy"] = proxy
    if limits is not None:
        client_kwargs["limits"] = limits
    return client_kwargs


def _require_api_key(settings: GovernorSettings) -> str:
    if not settings.api_key:
        raise ConfigurationError("GROQ_API_KEY が設定されていません。")
    return settings.api_key


def _as_request(
    request: CompletionRequest | dict[str, Any],
) -> CompletionRequest:
    if isinstance(request, CompletionRequest):
        return request
    messages = request.get("messages")
    if not messages:
        raise ValueError("messages は1件以上指定してください。")
    return CompletionRequest(
        messages=list(messages),
        model=request.get("model"),
        max_tokens=request.get("max_tokens"),
        temperature=request.get("temperature"),
    )


class Governor:
    """レート制限付き補完APIの同期ガバナー。"""

    def __init__(
        self,
        *,
        store: QuotaStateStore | None = None,
        settings: GovernorSettings | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
        http2: bool = False,
        proxy: str | None = None,
        limits: httpx.Limits | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """ガバナーを初期化する。

        Args:
            store: クォータ状態ストア。省略時はインスタンス専用のメモリストア。
            settings: 設定。省略時は環境変数から構築する。
            api_key: APIキー。設定より優先する。
            base_url: APIベースURL。設定より優先する。
            timeout: 送信タイムアウト秒。設定より優先する。
            http_client: 外部httpx.Client。
            http2: HTTP/2有効化。
            proxy: プロキシ。
            limits: httpx接続制御。
            sleep: 待機関数。
            clock: 現在時刻関数（UTC）。

        Raises:
            ValueError: 設定値が範囲外の場合。
        """

        self._settings = _resolve_settings(
            settings,
            {"api_key": api_key, "base_url": base_url, "timeout": timeout},
        )
        self._clock = clock or utcnow
        self._sleep = sleep or time.sleep
        self._store = store or InMemoryQuotaStateStore(settings=self._settings, clock=self._clock)

        self._owns_client = http_client is None
        if http_client is None:
            self._http_client = httpx.Client(
                **_http_client_kwargs(self._settings, http2=http2, proxy=proxy, limits=limits),
            )
        else:
            self._http_client = http_client

    @property
    def settings(self) -> GovernorSettings:
        """適用中の設定。"""

        return self._settings

    @property
    def store(self) -> QuotaStateStore:
        """クォータ状態ストア。"""

        return self._store

    def call(self, request: CompletionRequest | dict[str, Any]) -> GovernorResult:
        """補完APIを1回だけ呼び出す。

        Args:
            request: 補完要求。``{"messages", "model", "max_tokens", "temperature"}`` の辞書も可。

        Returns:
            デコード済み本文とクォータ情報。

        Raises:
            ConfigurationError: APIキー未設定。送信も状態更新もしない。
            CircuitOpenError: 遮断中。送信しない。
            RateLimitedError: 429。サーキットは open へ遷移済み。
            ProviderError: その他の2xx以外、タイムアウト、通信失敗。
        """

        api_key = _require_api_key(self._settings)
        completion = _as_request(request)
        payload = build_completion_payload(completion, self._settings)

        state = _admit(self._store, self._settings, self._clock())
        strategy, config = _select(state)
        if config.delay_ms > 0:
            self._sleep(config.delay_ms / 1000)

        url = completions_url(self._settings.base_url)
        headers = build_request_headers(api_key=api_key, user_agent=self._settings.user_agent)
        started = time.perf_counter()
        try:
            response = self._http_client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            latency_ms = round((time.perf_counter() - started) * 1000)
            raise _settle_transport_failure(
                store=self._store,
                settings=self._settings,
                state=state,
                exc=exc,
                latency_ms=latency_ms,
                request_url=url,
            ) from exc
        latency_ms = round((time.perf_counter() - started) * 1000)

        return _settle_response(
            store=self._store,
            settings=self._settings,
            response=response,
            latency_ms=latency_ms,
            strategy=strategy,
            request_url=url,
        )

    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GovernorResult:
        """``call`` の簡易版。"""

        return self.call(
            CompletionRequest(
                messages=messages,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        )

    def status(self) -> QuotaStatus:
        """現在のクォータ/サーキット状況を返す。送信はしない。"""

        return _build_status(self._store.get_quota_state(), self._settings, self._clock())

    def close(self) -> None:
        """内部Clientをクローズする。"""

        if self._owns_client:
            self._http_client.close()

    def __enter__(self) -> "Governor":
        """コンテキスト開始。"""

        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """コンテキスト終了。"""

        self.close()


class AsyncGovernor:
    """レート制限付き補完APIの非同期ガバナー。

    事前待機は ``asyncio.sleep`` で行い、イベントループを塞がない。
    """

    def __init__(
        self,
        *,
        store: QuotaStateStore | None = None,
        settings: GovernorSettings | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        http2: bool = False,
        proxy: str | None = None,
        limits: httpx.Limits | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """非同期ガバナーを初期化する。"""

        self._settings = _resolve_settings(
            settings,
            {"api_key": api_key, "base_url": base_url, "timeout": timeout},
        )
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        self._store = store or InMemoryQuotaStateStore(settings=self._settings, clock=self._clock)

        self._owns_client = http_client is None
        if http_client is None:
            self._http_client = httpx.AsyncClient(
                **_http_client_kwargs(self._settings, http2=http2, proxy=proxy, limits=limits),
            )
        else:
            self._http_client = http_client

    @property
    def settings(self) -> GovernorSettings:
        """適用中の設定。"""

        return self._settings

    @property
    def store(self) -> QuotaStateStore:
        """クォータ状態ストア。"""

        return self._store

    async def call(self, request: CompletionRequest | dict[str, Any]) -> GovernorResult:
        """補完APIを1回だけ呼び出す。"""

        api_key = _require_api_key(self._settings)
        completion = _as_request(request)
        payload = build_completion_payload(completion, self._settings)

        state = _admit(self._store, self._settings, self._clock())
        strategy, config = _select(state)
        if config.delay_ms > 0:
            await self._sleep(config.delay_ms / 1000)

        url = completions_url(self._settings.base_url)
        headers = build_request_headers(api_key=api_key, user_agent=self._settings.user_agent)
        started = time.perf_counter()
        try:
            response = await self._http_client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            latency_ms = round((time.perf_counter() - started) * 1000)
            raise _settle_transport_failure(
                store=self._store,
                settings=self._settings,
                state=state,
                exc=exc,
                latency_ms=latency_ms,
                request_url=url,
            ) from exc
        latency_ms = round((time.perf_counter() - started) * 1000)

        return _settle_response(
            store=self._store,
            settings=self._settings,
            response=response,
            latency_ms=latency_ms,
            strategy=strategy,
            request_url=url,
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GovernorResult:
        """``call`` の簡易版。"""

        return await self.call(
            CompletionRequest(
                messages=messages,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        )

    def status(self) -> QuotaStatus:
        """現在のクォータ/サーキット状況を返す。送信はしない。"""

        return _build_status(self._store.get_quota_state(), self._settings, self._clock())

    async def aclose(self) -> None:
        """内部Clientをクローズする。"""

        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "AsyncGovernor":
        """非同期コンテキスト開始。"""

        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """非同期コンテキスト終了。"""

        await self.aclose()
