"""クォータ状態ストア。

ガバナーが消費するのは ``get_quota_state`` / ``update_quota_state`` /
``update_circuit_state`` の3操作のみ。各実装は1レコードに対する書き込みを
自身のロック（SQLiteではトランザクション）の内側で完結させる。
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from quotagov.breaker import utcnow
from quotagov.config import STATE_SCHEMA_VERSION, GovernorSettings
from quotagov.enums import CircuitState
from quotagov.errors import QuotaStateConflictError, QuotaStateStoreError
from quotagov.headers import parse_reset_duration
from quotagov.types import GroqQuotaInfo, QuotaState

logger = logging.getLogger(__name__)

LATENCY_SMOOTHING = 0.2

_DATETIME_FIELDS = ("circuit_opened_at", "requests_reset_at", "tokens_reset_at", "updated_at")


@runtime_checkable
class QuotaStateStore(Protocol):
    """ガバナーが依存するストア操作。"""

    def get_quota_state(self) -> QuotaState: ...

    def update_quota_state(
        self,
        quota_info: GroqQuotaInfo,
        latency_ms: float,
        success: bool,
    ) -> QuotaState: ...

    def update_circuit_state(
        self,
        state: CircuitState | str,
        *,
        expected_version: int | None = None,
    ) -> QuotaState: ...

    def reset_quota_state(self) -> QuotaState: ...


def default_quota_state(settings: GovernorSettings | None = None) -> QuotaState:
    """レコードが無い場合の既定状態を返す。"""

    conf = settings or GovernorSettings()
    return QuotaState(
        requests_remaining_rpd=conf.requests_per_day,
        requests_limit_rpd=conf.requests_per_day,
        tokens_remaining_tpm=conf.tokens_per_minute,
        tokens_limit_tpm=conf.tokens_per_minute,
    )


def _clamp_pair(remaining: int, limit: int) -> tuple[int, int]:
    limit = max(1, limit)
    return min(max(0, remaining), limit), limit


def _reset_at(raw: str | None, now: datetime, previous: datetime | None) -> datetime | None:
    seconds = parse_reset_duration(raw)
    if seconds is None:
        return previous
    return now + timedelta(seconds=seconds)


def apply_quota_info(
    state: QuotaState,
    quota_info: GroqQuotaInfo,
    *,
    latency_ms: float,
    success: bool,
    now: datetime,
) -> QuotaState:
    """送信結果を反映した新しい状態を返す。

    Args:
        state: 現在の状態。
        quota_info: 当該レスポンスのクォータ情報。
        latency_ms: 観測レイテンシ。
        success: 2xxだったか。
        now: 反映時刻。

    Returns:
        更新後の状態。版番号は呼び出し側で進める。
    """

    requests_remaining, requests_limit = _clamp_pair(
        quota_info.requests_remaining_rpd, quota_info.requests_limit_rpd
    )
    tokens_remaining, tokens_limit = _clamp_pair(
        quota_info.tokens_remaining_tpm, quota_info.tokens_limit_tpm
    )
    if state.avg_latency_ms <= 0:
        avg_latency = float(latency_ms)
    else:
        avg_latency = state.avg_latency_ms * (1 - LATENCY_SMOOTHING) + latency_ms * LATENCY_SMOOTHING
    return replace(
        state,
        requests_remaining_rpd=requests_remaining,
        requests_limit_rpd=requests_limit,
        tokens_remaining_tpm=tokens_remaining,
        tokens_limit_tpm=tokens_limit,
        avg_latency_ms=round(avg_latency, 2),
        consecutive_failures=0 if success else state.consecutive_failures + 1,
        requests_reset_at=_reset_at(quota_info.requests_reset_rpd, now, state.requests_reset_at),
        tokens_reset_at=_reset_at(quota_info.tokens_reset_tpm, now, state.tokens_reset_at),
    )


def apply_circuit_state(state: QuotaState, target: CircuitState, *, now: datetime) -> QuotaState:
    """サーキット遷移を反映した新しい状態を返す。

    open は常に ``circuit_opened_at`` を現在時刻へ置き直してタイムアウトを
    再開する。closed は開始時刻と連続失敗回数を消す。
    """

    if target == CircuitState.OPEN:
        return replace(state, circuit_state=target, circuit_opened_at=now)
    if target == CircuitState.HALF_OPEN:
        return replace(state, circuit_state=target, circuit_opened_at=state.circuit_opened_at or now)
    return replace(state, circuit_state=target, circuit_opened_at=None, consecutive_failures=0)


def state_to_payload(state: QuotaState) -> dict[str, Any]:
    """状態をJSON化可能な辞書へ変換する。"""

    payload = asdict(state)
    payload["circuit_state"] = state.circuit_state.value
    for name in _DATETIME_FIELDS:
        value = payload.get(name)
        payload[name] = value.isoformat() if value is not None else None
    return payload


def state_from_payload(payload: dict[str, Any]) -> QuotaState:
    """``state_to_payload`` の出力から状態を復元する。

    Raises:
        QuotaStateStoreError: 必須項目の欠落や型不整合がある場合。
    """

    try:
        values: dict[str, Any] = {
            "requests_remaining_rpd": int(payload["requests_remaining_rpd"]),
            "requests_limit_rpd": int(payload["requests_limit_rpd"]),
            "tokens_remaining_tpm": int(payload["tokens_remaining_tpm"]),
            "tokens_limit_tpm": int(payload["tokens_limit_tpm"]),
            "avg_latency_ms": float(payload.get("avg_latency_ms") or 0.0),
            "circuit_state": CircuitState(payload.get("circuit_state") or CircuitState.CLOSED),
            "consecutive_failures": int(payload.get("consecutive_failures") or 0),
            "version": int(payload.get("version") or 0),
        }
        for name in _DATETIME_FIELDS:
            raw = payload.get(name)
            values[name] = datetime.fromisoformat(raw) if raw else None
    except (KeyError, TypeError, ValueError) as exc:
        raise QuotaStateStoreError(f"クォータ状態を復元できません: {exc}") from exc
    return QuotaState(**values)


class _LockedQuotaStateStore:
    """読み込み・判定・書き込みを1つのロックで直列化する共通実装。"""

    def __init__(
        self,
        *,
        settings: GovernorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or GovernorSettings()
        self._clock = clock or utcnow
        self._lock = threading.Lock()

    def _read(self) -> QuotaState | None:
        raise NotImplementedError

    def _write(self, state: QuotaState) -> None:
        raise NotImplementedError

    def _mutate(
        self,
        change: Callable[[QuotaState, datetime], QuotaState],
        *,
        expected_version: int | None = None,
    ) -> QuotaState:
        with self._lock:
            current = self._read() or default_quota_state(self._settings)
            if expected_version is not None and current.version != expected_version:
                raise QuotaStateConflictError(
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            now = self._clock()
            updated = replace(change(current, now), version=current.version + 1, updated_at=now)
            self._write(updated)
            return replace(updated)

    def get_quota_state(self) -> QuotaState:
        """現在の状態を返す。レコードが無ければ既定状態を返す。"""

        with self._lock:
            state = self._read()
        if state is None:
            return default_quota_state(self._settings)
        return state

    def update_quota_state(
        self,
        quota_info: GroqQuotaInfo,
        latency_ms: float,
        success: bool,
    ) -> QuotaState:
        """送信1回分の結果を反映する。

        Args:
            quota_info: 当該レスポンスのクォータ情報。
            latency_ms: 観測レイテンシ。
            success: 2xxだったか。

        Returns:
            更新後の状態。
        """

        return self._mutate(
            lambda state, now: apply_quota_info(
                state,
                quota_info,
                latency_ms=latency_ms,
                success=success,
                now=now,
            )
        )

    def update_circuit_state(
        self,
        state: CircuitState | str,
        *,
        expected_version: int | None = None,
    ) -> QuotaState:
        """サーキット状態を書き込む。

        Args:
            state: 遷移先。
            expected_version: 指定時は保存済みの版番号と一致する場合のみ書き込む。

        Returns:
            更新後の状態。

        Raises:
            QuotaStateConflictError: 版番号が一致しない場合。
        """

        target = CircuitState(state)
        return self._mutate(
            lambda current, now: apply_circuit_state(current, target, now=now),
            expected_version=expected_version,
        )

    def reset_quota_state(self) -> QuotaState:
        """状態を既定値へ戻す。版番号は進める。"""

        return self._mutate(lambda current, now: default_quota_state(self._settings))


class InMemoryQuotaStateStore(_LockedQuotaStateStore):
    """プロセス内メモリに保持するストア。インスタンス間で状態を共有しない。"""

    def __init__(
        self,
        initial: QuotaState | None = None,
        *,
        settings: GovernorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(settings=settings, clock=clock)
        self._state = replace(initial) if initial is not None else None

    def _read(self) -> QuotaState | None:
        return replace(self._state) if self._state is not None else None

    def _write(self, state: QuotaState) -> None:
        self._state = replace(state)


class FileQuotaStateStore(_LockedQuotaStateStore):
    """JSONファイル1つに保持するストア。書き込みは一時ファイル経由で置換する。"""

    def __init__(
        self,
        path: str | Path,
        *,
        settings: GovernorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(settings=settings, clock=clock)
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        """状態ファイルのパス。"""

        return self._path

    def _read(self) -> QuotaState | None:
        if not self._path.exists():
            return None
        try:
            body = json.loads(self._path.read_text(encoding="utf-8"))
            return state_from_payload(body["state"])
        except (OSError, json.JSONDecodeError, KeyError, TypeError, QuotaStateStoreError) as exc:
            quarantine = self._path.with_suffix(self._path.suffix + ".broken")
            logger.warning("Unreadable quota state at %s (%s); moving to %s", self._path, exc, quarantine)
            try:
                self._path.replace(quarantine)
            except OSError:
                pass
            return None

    def _write(self, state: QuotaState) -> None:
        body = {
            "schema_version": STATE_SCHEMA_VERSION,
            "state": state_to_payload(state),
        }
        data = json.dumps(body, ensure_ascii=False, indent=2)
        fd, tmp_path = tempfile.mkstemp(
            prefix=self._path.name,
            suffix=".tmp",
            dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            Path(tmp_path).replace(self._path)
        except OSError as exc:
            raise QuotaStateStoreError(f"クォータ状態を書き込めません: {exc}") from exc
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)


_SQLITE_COLUMNS = (
    "requests_remaining_rpd",
    "requests_limit_rpd",
    "tokens_remaining_tpm",
    "tokens_limit_tpm",
    "avg_latency_ms",
    "circuit_state",
    "circuit_opened_at",
    "consecutive_failures",
    "requests_reset_at",
    "tokens_reset_at",
    "updated_at",
    "version",
)


class SqliteQuotaStateStore(_LockedQuotaStateStore):
    """SQLiteの1行に保持するストア。

    書き込みは ``BEGIN IMMEDIATE`` のトランザクション内で読み直してから行うため、
    同じDBファイルを共有する複数プロセス間でも読み込み・更新が直列化される。
    """

    def __init__(
        self,
        path: str | Path,
        *,
        provider: str = "groq",
        settings: GovernorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(settings=settings, clock=clock)
        self._path = str(path)
        self._provider = provider
        self._connections: dict[int, sqlite3.Connection] = {}
        self._connections_lock = threading.Lock()
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quota_state (
                    provider TEXT PRIMARY KEY,
                    requests_remaining_rpd INTEGER NOT NULL,
                    requests_limit_rpd INTEGER NOT NULL,
                    tokens_remaining_tpm INTEGER NOT NULL,
                    tokens_limit_tpm INTEGER NOT NULL,
                    avg_latency_ms REAL NOT NULL DEFAULT 0,
                    circuit_state TEXT NOT NULL DEFAULT 'closed',
                    circuit_opened_at TEXT,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0,
                    requests_reset_at TEXT,
                    tokens_reset_at TEXT,
                    updated_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    def _connect(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        with self._connections_lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = sqlite3.connect(
                    self._path,
                    timeout=30.0,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                self._connections[thread_id] = conn
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise QuotaStateStoreError(f"SQLiteトランザクションを開始できません: {exc}") from exc
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def close(self) -> None:
        """全スレッドで開いた接続を閉じる。以後の操作では接続を開き直す。"""

        with self._connections_lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            conn.close()

    def _read_row(self, conn: sqlite3.Connection) -> QuotaState | None:
        row = conn.execute(
            f"SELECT {', '.join(_SQLITE_COLUMNS)} FROM quota_state WHERE provider = ?",
            (self._provider,),
        ).fetchone()
        if row is None:
            return None
        return state_from_payload(dict(zip(_SQLITE_COLUMNS, row)))

    def _read(self) -> QuotaState | None:
        try:
            return self._read_row(self._connect())
        except sqlite3.Error as exc:
            raise QuotaStateStoreError(f"クォータ状態を読み込めません: {exc}") from exc

    def _write_row(self, conn: sqlite3.Connection, state: QuotaState) -> None:
        payload = state_to_payload(state)
        placeholders = ", ".join("?" for _ in range(len(_SQLITE_COLUMNS) + 1))
        conn.execute(
            f"INSERT OR REPLACE INTO quota_state (provider, {', '.join(_SQLITE_COLUMNS)}) "
            f"VALUES ({placeholders})",
            (self._provider, *(payload[name] for name in _SQLITE_COLUMNS)),
        )

    def _mutate(
        self,
        change: Callable[[QuotaState, datetime], QuotaState],
        *,
        expected_version: int | None = None,
    ) -> QuotaState:
        with self._lock:
            try:
                with self._transaction() as conn:
                    current = self._read_row(conn) or default_quota_state(self._settings)
                    if expected_version is not None and current.version != expected_version:
                        raise QuotaStateConflictError(
                            expected_version=expected_version,
                            actual_version=current.version,
                        )
                    now = self._clock()
                    updated = replace(change(current, now), version=current.version + 1, updated_at=now)
                    self._write_row(conn, updated)
            except sqlite3.Error as exc:
                raise QuotaStateStoreError(f"クォータ状態を書き込めません: {exc}") from exc
            return updated
