"""HTTP実行補助。"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from quotagov.config import GovernorSettings
from quotagov.types import CompletionRequest

COMPLETIONS_PATH = "/chat/completions"
EXCERPT_LIMIT = 2048


def build_request_headers(*, api_key: str, user_agent: str) -> Mapping[str, str]:
    """標準ヘッダを構築する。"""

    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }


def completions_url(base_url: str) -> str:
    """チャット補完エンドポイントの絶対URLを返す。"""

    return base_url.rstrip("/") + COMPLETIONS_PATH


def build_completion_payload(request: CompletionRequest, settings: GovernorSettings) -> dict[str, Any]:
    """送信本文を構築する。未指定項目は設定の既定値で補う。

    Args:
        request: 補完要求。
        settings: 既定値を持つ設定。

    Returns:
        JSON本文。

    Raises:
        ValueError: messages が空の場合。
    """

    if not request.messages:
        raise ValueError("messages は1件以上指定してください。")
    return {
        "model": request.model or settings.default_model,
        "messages": [dict(message) for message in request.messages],
        "max_tokens": request.max_tokens or settings.default_max_tokens,
        "temperature": (
            request.temperature if request.temperature is not None else settings.default_temperature
        ),
    }


def response_excerpt(response: httpx.Response) -> str:
    """例外に添えるレスポンス本文の抜粋を返す。"""

    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    return text[:EXCERPT_LIMIT]


def is_success_status(status_code: int) -> bool:
    """2xxか判定する。"""

    return 200 <= status_code < 300
