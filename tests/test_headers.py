"""レート制限ヘッダ解析のテスト。"""

from __future__ import annotations

import httpx
import pytest

from quotagov.headers import parse_rate_limit_headers, parse_reset_duration, parse_retry_after


def test_missing_headers_fall_back_to_defaults() -> None:
    info = parse_rate_limit_headers({})

    assert info.requests_limit_rpd == 14400
    assert info.requests_remaining_rpd == 14400
    assert info.tokens_limit_tpm == 6000
    assert info.tokens_remaining_tpm == 6000
    assert info.requests_reset_rpd is None
    assert info.tokens_reset_tpm is None
    assert info.retry_after is None


def test_none_headers_do_not_raise() -> None:
    info = parse_rate_limit_headers(None)

    assert info.requests_limit_rpd == 14400
    assert info.tokens_limit_tpm == 6000


def test_all_headers_are_parsed_case_insensitively() -> None:
    headers = httpx.Headers(
        {
            "X-RateLimit-Limit-Requests": "14400",
            "X-RateLimit-Remaining-Requests": "14370",
            "X-RateLimit-Reset-Requests": "2m59.56s",
            "X-RateLimit-Limit-Tokens": "6000",
            "X-RateLimit-Remaining-Tokens": "5997",
            "X-RateLimit-Reset-Tokens": "7.66s",
            "Retry-After": "2",
        }
    )

    info = parse_rate_limit_headers(headers)

    assert info.requests_remaining_rpd == 14370
    assert info.requests_reset_rpd == "2m59.56s"
    assert info.tokens_remaining_tpm == 5997
    assert info.tokens_reset_tpm == "7.66s"
    assert info.retry_after == "2"


def test_malformed_counts_use_defaults_per_field() -> None:
    headers = {
        "x-ratelimit-limit-requests": "lots",
        "x-ratelimit-remaining-requests": "120",
        "x-ratelimit-limit-tokens": "",
        "x-ratelimit-remaining-tokens": "-5",
    }

    info = parse_rate_limit_headers(headers)

    assert info.requests_limit_rpd == 14400
    assert info.requests_remaining_rpd == 120
    assert info.tokens_limit_tpm == 6000
    assert info.tokens_remaining_tpm == 6000


def test_defaults_are_configurable() -> None:
    info = parse_rate_limit_headers({}, requests_per_day=1000, tokens_per_minute=500)

    assert info.requests_limit_rpd == 1000
    assert info.tokens_remaining_tpm == 500


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2m59.56s", 179.56),
        ("7.66s", 7.66),
        ("120ms", 0.12),
        ("1h2m3s", 3723.0),
        ("30", 30.0),
    ],
)
def test_parse_reset_duration(raw: str, expected: float) -> None:
    assert parse_reset_duration(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", [None, "", "soon", "5x", "s", "-3", "2m junk"])
def test_parse_reset_duration_rejects_garbage(raw: str | None) -> None:
    assert parse_reset_duration(raw) is None


def test_parse_retry_after_seconds_and_garbage() -> None:
    assert parse_retry_after("17") == 17.0
    assert parse_retry_after("1.5") == 1.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("later") is None


def test_parse_retry_after_http_date_in_past_is_zero() -> None:
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
