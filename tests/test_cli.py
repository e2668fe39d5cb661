"""CLI補助関数のテスト。"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from quotagov import (
    CircuitState,
    FileQuotaStateStore,
    Governor,
    GovernorSettings,
    InMemoryQuotaStateStore,
    QuotaState,
    SqliteQuotaStateStore,
)
from quotagov.cli import _format_status, _open_store, _resolve_state_path, _status_payload

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_open_store_picks_backend_by_suffix(tmp_path: Path) -> None:
    settings = GovernorSettings()

    sqlite_store = _open_store(tmp_path / "quota.sqlite3", settings)
    file_store = _open_store(tmp_path / "quota.json", settings)
    try:
        assert isinstance(sqlite_store, SqliteQuotaStateStore)
        assert isinstance(file_store, FileQuotaStateStore)
    finally:
        sqlite_store.close()


def test_resolve_state_path_prefers_option(tmp_path: Path) -> None:
    settings = GovernorSettings(state_file=str(tmp_path / "env.json"))

    assert _resolve_state_path(tmp_path / "cli.json", settings) == tmp_path / "cli.json"
    assert _resolve_state_path(None, settings) == tmp_path / "env.json"
    with pytest.raises(ValueError):
        _resolve_state_path(None, GovernorSettings())


def test_status_payload_is_json_serializable() -> None:
    store = InMemoryQuotaStateStore(
        QuotaState(
            tokens_remaining_tpm=1200,
            circuit_state=CircuitState.OPEN,
            circuit_opened_at=START - timedelta(seconds=45),
            consecutive_failures=3,
        ),
        clock=lambda: START,
    )
    with Governor(store=store, settings=GovernorSettings(api_key="k"), clock=lambda: START) as governor:
        status = governor.status()

    payload = _status_payload(status)
    decoded = json.loads(json.dumps(payload))

    assert decoded["strategy"] == "conservative"
    assert decoded["tokens_ratio"] == 0.2
    assert decoded["state"]["circuit_state"] == "open"
    assert decoded["state"]["circuit_opened_at"] == (START - timedelta(seconds=45)).isoformat()
    assert decoded["config"] == {"delay_ms": 500, "max_batch_size": 10, "skip_rate_limit_check": False}
    assert decoded["seconds_until_half_open"] == 15
    assert decoded["extras"] == {"can_try_half_open": False}

    text = _format_status(status)
    assert "circuit:   open (failures 3)" in text
    assert "half-open: in 15s" in text


def _invoke(args: list[str]) -> Any:
    testing = pytest.importorskip("typer.testing")
    from quotagov.cli import build_app

    return testing.CliRunner().invoke(build_app(), args)


def test_status_command_prints_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("QUOTAGOV_STATE_FILE", raising=False)
    path = tmp_path / "state.json"
    FileQuotaStateStore(path).update_circuit_state(CircuitState.OPEN)

    result = _invoke(["status", "--state-file", str(path), "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["state"]["circuit_state"] == "open"
    assert payload["strategy"] == "aggressive"


def test_complete_command_without_api_key_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.delenv("QUOTAGOV_API_KEY", raising=False)
    path = tmp_path / "state.json"

    result = _invoke(["complete", "--state-file", str(path), "--prompt", "hello"])

    assert result.exit_code == 2
    assert "ConfigurationError" in result.output
    assert FileQuotaStateStore(path).get_quota_state().version == 0


def test_missing_state_file_is_a_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("QUOTAGOV_STATE_FILE", raising=False)

    result = _invoke(["status"])

    assert result.exit_code == 2
    assert not isinstance(result.exception, ValueError)
