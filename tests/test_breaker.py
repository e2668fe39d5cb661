"""サーキットブレーカー判定のテスト。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from quotagov import (
    CircuitState,
    GovernorSettings,
    QuotaState,
    can_try_half_open,
    seconds_until_half_open,
    should_open_circuit,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_should_open_on_consecutive_failures() -> None:
    assert should_open_circuit(QuotaState(consecutive_failures=2)) is False
    assert should_open_circuit(QuotaState(consecutive_failures=3)) is True


def test_should_open_on_quota_exhaustion_without_failures() -> None:
    assert should_open_circuit(QuotaState(tokens_remaining_tpm=99)) is True
    assert should_open_circuit(QuotaState(tokens_remaining_tpm=100)) is False
    assert should_open_circuit(QuotaState(requests_remaining_rpd=9)) is True
    assert should_open_circuit(QuotaState(requests_remaining_rpd=10)) is False


def test_should_open_uses_settings_thresholds() -> None:
    settings = GovernorSettings(max_consecutive_failures=5, min_tokens_remaining=0)
    state = QuotaState(consecutive_failures=4, tokens_remaining_tpm=50)

    assert should_open_circuit(state, settings=settings) is False


def test_half_open_requires_elapsed_timeout() -> None:
    state = QuotaState(
        circuit_state=CircuitState.OPEN,
        circuit_opened_at=NOW - timedelta(seconds=59),
    )
    assert can_try_half_open(state, now=NOW) is False
    assert seconds_until_half_open(state, now=NOW) == 1

    state.circuit_opened_at = NOW - timedelta(seconds=60)
    assert can_try_half_open(state, now=NOW) is True
    assert seconds_until_half_open(state, now=NOW) == 0


def test_half_open_only_from_open() -> None:
    for circuit in (CircuitState.CLOSED, CircuitState.HALF_OPEN):
        state = QuotaState(
            circuit_state=circuit,
            circuit_opened_at=NOW - timedelta(hours=1),
        )
        assert can_try_half_open(state, now=NOW) is False
        assert seconds_until_half_open(state, now=NOW) == 0


def test_open_without_timestamp_never_half_opens() -> None:
    state = QuotaState(circuit_state=CircuitState.OPEN, circuit_opened_at=None)

    assert can_try_half_open(state, now=NOW) is False
    assert seconds_until_half_open(state, now=NOW) == 60


def test_seconds_until_half_open_rounds_up() -> None:
    state = QuotaState(
        circuit_state=CircuitState.OPEN,
        circuit_opened_at=NOW - timedelta(seconds=29, milliseconds=500),
    )

    assert seconds_until_half_open(state, now=NOW) == 31


def test_naive_timestamp_is_treated_as_utc() -> None:
    state = QuotaState(
        circuit_state=CircuitState.OPEN,
        circuit_opened_at=datetime(2026, 3, 1, 11, 58, 0),
    )

    assert can_try_half_open(state, now=NOW) is True
