"""AsyncGovernor のテスト。"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from quotagov import (
    AdaptiveStrategy,
    AsyncGovernor,
    CircuitOpenError,
    CircuitState,
    GovernorSettings,
    InMemoryQuotaStateStore,
    ProviderError,
    QuotaState,
    RateLimitedError,
)

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
MESSAGES = [{"role": "user", "content": "hello"}]


def _clock() -> datetime:
    return START


def test_async_call_waits_with_injected_sleep() -> None:
    captured: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "ok"}}]},
            headers={"x-ratelimit-remaining-requests": "399"},
            request=request,
        )

    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    store = InMemoryQuotaStateStore(QuotaState(requests_remaining_rpd=400), clock=_clock)

    async def run() -> None:
        async with AsyncGovernor(
            store=store,
            settings=GovernorSettings(api_key="test-key"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=fake_sleep,
            clock=_clock,
        ) as governor:
            result = await governor.complete(MESSAGES, max_tokens=50)
            assert result.strategy == AdaptiveStrategy.CRITICAL
            assert result.data["choices"][0]["message"]["content"] == "ok"

    asyncio.run(run())

    assert sleeps == [2.0]
    assert captured[0]["max_tokens"] == 50
    assert store.get_quota_state().requests_remaining_rpd == 399


def test_async_failures_open_circuit() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(502, request=request)

    store = InMemoryQuotaStateStore(clock=_clock)

    async def run() -> None:
        governor = AsyncGovernor(
            store=store,
            settings=GovernorSettings(api_key="test-key"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=_clock,
        )
        for _ in range(3):
            with pytest.raises(ProviderError):
                await governor.call({"messages": MESSAGES})
        with pytest.raises(CircuitOpenError):
            await governor.call({"messages": MESSAGES})
        await governor.aclose()

    asyncio.run(run())

    assert calls == 3
    assert store.get_quota_state().circuit_state == CircuitState.OPEN


def test_async_rate_limited_and_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "3.2"}, request=request)

    store = InMemoryQuotaStateStore(clock=_clock)

    async def run() -> None:
        governor = AsyncGovernor(
            store=store,
            settings=GovernorSettings(api_key="test-key"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=_clock,
        )
        with pytest.raises(RateLimitedError) as exc_info:
            await governor.call({"messages": MESSAGES})
        assert exc_info.value.retry_after_seconds == 4

        status = governor.status()
        assert status.state.circuit_state == CircuitState.OPEN
        assert status.seconds_until_half_open == 60

        later = InMemoryQuotaStateStore(
            QuotaState(
                circuit_state=CircuitState.OPEN,
                circuit_opened_at=START - timedelta(seconds=120),
            ),
            clock=_clock,
        )
        probe = AsyncGovernor(store=later, settings=GovernorSettings(api_key="test-key"), clock=_clock)
        assert probe.status().extras["can_try_half_open"] is True
        await probe.aclose()

    asyncio.run(run())
