"""quotagov 公開API。"""

from quotagov.breaker import can_try_half_open, seconds_until_half_open, should_open_circuit
from quotagov.config import GovernorSettings
from quotagov.enums import AdaptiveStrategy, CircuitState
from quotagov.errors import (
    CircuitOpenError,
    ConfigurationError,
    GovernorError,
    GovernorTimeoutError,
    GovernorTransportError,
    ProviderError,
    QuotaStateConflictError,
    QuotaStateStoreError,
    RateLimitedError,
)
from quotagov.governor import AsyncGovernor, Governor
from quotagov.headers import parse_rate_limit_headers
from quotagov.store import (
    FileQuotaStateStore,
    InMemoryQuotaStateStore,
    QuotaStateStore,
    SqliteQuotaStateStore,
)
from quotagov.strategy import compute_strategy, config_for
from quotagov.types import (
    AdaptiveConfig,
    CompletionRequest,
    GovernorResult,
    GroqQuotaInfo,
    QuotaState,
    QuotaStatus,
)

__all__ = [
    "AdaptiveConfig",
    "AdaptiveStrategy",
    "AsyncGovernor",
    "CircuitOpenError",
    "CircuitState",
    "CompletionRequest",
    "ConfigurationError",
    "FileQuotaStateStore",
    "Governor",
    "GovernorError",
    "GovernorResult",
    "GovernorSettings",
    "GovernorTimeoutError",
    "GovernorTransportError",
    "GroqQuotaInfo",
    "InMemoryQuotaStateStore",
    "ProviderError",
    "QuotaState",
    "QuotaStateConflictError",
    "QuotaStateStore",
    "QuotaStateStoreError",
    "QuotaStatus",
    "RateLimitedError",
    "SqliteQuotaStateStore",
    "can_try_half_open",
    "compute_strategy",
    "config_for",
    "parse_rate_limit_headers",
    "seconds_until_half_open",
    "should_open_circuit",
]
