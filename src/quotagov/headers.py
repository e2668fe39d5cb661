"""レート制限ヘッダの解析。

どの関数も例外を送出しない。欠落・不正な値は既定値かNoneへ置き換える。
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Mapping
from email.utils import parsedate_to_datetime

from quotagov.config import REQUESTS_PER_DAY, TOKENS_PER_MINUTE
from quotagov.types import GroqQuotaInfo

logger = logging.getLogger(__name__)

HEADER_LIMIT_REQUESTS = "x-ratelimit-limit-requests"
HEADER_REMAINING_REQUESTS = "x-ratelimit-remaining-requests"
HEADER_RESET_REQUESTS = "x-ratelimit-reset-requests"
HEADER_LIMIT_TOKENS = "x-ratelimit-limit-tokens"
HEADER_REMAINING_TOKENS = "x-ratelimit-remaining-tokens"
HEADER_RESET_TOKENS = "x-ratelimit-reset-tokens"
HEADER_RETRY_AFTER = "retry-after"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def _lookup(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_count(headers: Mapping[str, str], name: str, default: int) -> int:
    raw = _lookup(headers, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.debug("Non-numeric %s header %r; using default %d", name, raw, default)
        return default
    if value < 0:
        logger.debug("Negative %s header %r; using default %d", name, raw, default)
        return default
    return value


def parse_rate_limit_headers(
    headers: Mapping[str, str] | None,
    *,
    requests_per_day: int = REQUESTS_PER_DAY,
    tokens_per_minute: int = TOKENS_PER_MINUTE,
) -> GroqQuotaInfo:
    """レスポンスヘッダからクォータ情報を組み立てる。

    ヘッダ名は大文字小文字を区別しない。

    Args:
        headers: レスポンスヘッダ。Noneは空として扱う。
        requests_per_day: 要求数ヘッダ欠落時の既定値。
        tokens_per_minute: トークンヘッダ欠落時の既定値。

    Returns:
        欠落項目を既定値で埋めた解析結果。
    """

    normalized = {str(key).lower(): str(value) for key, value in headers.items()} if headers else {}
    return GroqQuotaInfo(
        requests_limit_rpd=_parse_count(normalized, HEADER_LIMIT_REQUESTS, requests_per_day),
        requests_remaining_rpd=_parse_count(normalized, HEADER_REMAINING_REQUESTS, requests_per_day),
        requests_reset_rpd=_lookup(normalized, HEADER_RESET_REQUESTS),
        tokens_limit_tpm=_parse_count(normalized, HEADER_LIMIT_TOKENS, tokens_per_minute),
        tokens_remaining_tpm=_parse_count(normalized, HEADER_REMAINING_TOKENS, tokens_per_minute),
        tokens_reset_tpm=_lookup(normalized, HEADER_RESET_TOKENS),
        retry_after=_lookup(normalized, HEADER_RETRY_AFTER),
    )


def parse_reset_duration(value: str | None) -> float | None:
    """``2m59.56s`` 形式のリセット時間を秒へ変換する。

    単位なしの数値は秒とみなす。

    Args:
        value: ヘッダ原文。

    Returns:
        秒数。解釈できない場合はNone。
    """

    if not value:
        return None
    text = value.strip().lower()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return seconds if math.isfinite(seconds) and seconds >= 0 else None

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        return None
    return total


def parse_retry_after(value: str | None) -> float | None:
    """Retry-Afterヘッダを秒へ変換する。"""

    if not value:
        return None
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        dt = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    return max(0.0, dt.timestamp() - time.time())
