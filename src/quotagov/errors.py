"""例外定義。"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class GovernorErrorContext:
    """例外に付随する共通コンテキスト。

    Attributes:
        request_url: リクエストURL。
        raw_response_excerpt: レスポンス抜粋。
    """

    request_url: str | None = None
    raw_response_excerpt: str | None = None


class GovernorError(Exception):
    """ライブラリ例外の基底クラス。

    Attributes:
        origin: 例外発生元。
        context: 追加コンテキスト。
    """

    def __init__(
        self,
        message: str,
        *,
        origin: str,
        context: GovernorErrorContext | None = None,
    ) -> None:
        super().__init__(message)
        self.origin = origin
        self.context = context or GovernorErrorContext()


class CircuitOpenError(GovernorError):
    """サーキットが open のため送信せずに拒否した。

    Attributes:
        seconds_remaining: half-open 試行が可能になるまでの秒数。
    """

    def __init__(self, seconds_remaining: int) -> None:
        super().__init__(
            f"CIRCUIT_OPEN: 遮断中のため送信しません。{seconds_remaining}秒後に再試行してください。",
            origin="circuit_breaker",
        )
        self.seconds_remaining = seconds_remaining


class ProviderError(GovernorError):
    """プロバイダが2xx以外を返した。

    Attributes:
        status_code: HTTPステータス。タイムアウト等で応答が無い場合はNone。
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None,
        request_url: str | None = None,
        raw_response_excerpt: str | None = None,
    ) -> None:
        super().__init__(
            message or f"プロバイダAPIエラー: status={status_code}",
            origin="server_response",
            context=GovernorErrorContext(
                request_url=request_url,
                raw_response_excerpt=raw_response_excerpt,
            ),
        )
        self.status_code = status_code


class RateLimitedError(GovernorError):
    """STATUS=429。サーキットは強制的に open へ遷移済み。

    Attributes:
        retry_after_seconds: 再試行までの秒数。
        status_code: 常に429。
    """

    def __init__(
        self,
        retry_after_seconds: int,
        *,
        request_url: str | None = None,
        raw_response_excerpt: str | None = None,
    ) -> None:
        super().__init__(
            f"RATE_LIMITED: プロバイダのレート上限に達しました。{retry_after_seconds}秒後に再試行してください。",
            origin="server_response",
            context=GovernorErrorContext(
                request_url=request_url,
                raw_response_excerpt=raw_response_excerpt,
            ),
        )
        self.status_code = 429
        self.retry_after_seconds = retry_after_seconds


class GovernorTimeoutError(ProviderError):
    """送信がタイムアウトした。失敗1回として計上される。"""

    def __init__(self, message: str, *, request_url: str | None = None) -> None:
        super().__init__(message, status_code=None, request_url=request_url)


class GovernorTransportError(ProviderError):
    """HTTP通信層の例外。失敗1回として計上される。"""

    def __init__(self, message: str, *, request_url: str | None = None) -> None:
        super().__init__(message, status_code=None, request_url=request_url)
        self.origin = "transport"


class ConfigurationError(GovernorError):
    """認証情報や設定の不足。送信前に送出され、失敗回数には含めない。"""

    def __init__(self, message: str) -> None:
        super().__init__(message, origin="client_validation")


class QuotaStateStoreError(GovernorError):
    """クォータ状態ストアの読み書きに失敗した。"""

    def __init__(self, message: str) -> None:
        super().__init__(message, origin="state_store")


class QuotaStateConflictError(QuotaStateStoreError):
    """期待バージョンと保存済みバージョンが一致しない。

    Attributes:
        expected_version: 呼び出し側が読んだバージョン。
        actual_version: 保存済みのバージョン。
    """

    def __init__(self, *, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"クォータ状態が更新済みです: expected={expected_version}, actual={actual_version}"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version
