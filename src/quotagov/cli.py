"""CLIエントリポイント。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from quotagov.config import GovernorSettings
from quotagov.store import FileQuotaStateStore, QuotaStateStore, SqliteQuotaStateStore, state_to_payload
from quotagov.types import QuotaStatus

_SQLITE_SUFFIXES = {".db", ".sqlite", ".sqlite3"}


def _require_typer() -> Any:
    try:
        import typer
    except ImportError as exc:
        raise RuntimeError(
            "CLIには typer が必要です。pip install 'quotagov[cli]' を実行してください。"
        ) from exc
    return typer


def _open_store(path: Path, settings: GovernorSettings) -> QuotaStateStore:
    """拡張子からストア実装を選ぶ。"""

    if path.suffix.lower() in _SQLITE_SUFFIXES:
        return SqliteQuotaStateStore(path, settings=settings)
    return FileQuotaStateStore(path, settings=settings)


def _resolve_state_path(state_file: Path | None, settings: GovernorSettings) -> Path:
    if state_file is not None:
        return state_file
    if settings.state_file:
        return Path(settings.state_file)
    raise ValueError("--state-file か QUOTAGOV_STATE_FILE を指定してください。")


def _status_payload(status: QuotaStatus) -> dict[str, Any]:
    """状況スナップショットをJSON化可能な辞書へ変換する。"""

    return {
        "state": state_to_payload(status.state),
        "requests_ratio": round(status.requests_ratio, 4),
        "tokens_ratio": round(status.tokens_ratio, 4),
        "min_ratio": round(status.min_ratio, 4),
        "strategy": status.strategy.value,
        "config": {
            "delay_ms": status.config.delay_ms,
            "max_batch_size": status.config.max_batch_size,
            "skip_rate_limit_check": status.config.skip_rate_limit_check,
        },
        "seconds_until_half_open": status.seconds_until_half_open,
        "extras": dict(status.extras),
    }


def _format_status(status: QuotaStatus) -> str:
    state = status.state
    lines = [
        f"strategy:  {status.strategy.value} (delay {status.config.delay_ms}ms, "
        f"batch {status.config.max_batch_size})",
        f"requests:  {state.requests_remaining_rpd}/{state.requests_limit_rpd} "
        f"({status.requests_ratio:.1%})",
        f"tokens:    {state.tokens_remaining_tpm}/{state.tokens_limit_tpm} "
        f"({status.tokens_ratio:.1%})",
        f"circuit:   {state.circuit_state.value} (failures {state.consecutive_failures})",
        f"latency:   {state.avg_latency_ms:.0f}ms avg",
    ]
    if status.seconds_until_half_open:
        lines.append(f"half-open: in {status.seconds_until_half_open}s")
    return "\n".join(lines)


def build_app() -> Any:
    """CLIアプリを構築する。"""

    typer = _require_typer()
    from quotagov import Governor, GovernorError

    app = typer.Typer(no_args_is_help=True)

    def _store_for(state_file: Path | None, settings: GovernorSettings) -> QuotaStateStore:
        try:
            path = _resolve_state_path(state_file, settings)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--state-file") from exc
        return _open_store(path, settings)

    @app.command("status")
    def status_command(
        state_file: Path | None = typer.Option(None, "--state-file"),
        as_json: bool = typer.Option(False, "--json"),
    ) -> None:
        """クォータ/サーキット状況を表示する。"""

        settings = GovernorSettings.from_env()
        store = _store_for(state_file, settings)
        with Governor(store=store, settings=settings) as governor:
            status = governor.status()
        if as_json:
            typer.echo(json.dumps(_status_payload(status), ensure_ascii=False, indent=2))
        else:
            typer.echo(_format_status(status))

    @app.command("reset")
    def reset_command(
        state_file: Path | None = typer.Option(None, "--state-file"),
    ) -> None:
        """状態を既定値へ戻す。"""

        settings = GovernorSettings.from_env()
        store = _store_for(state_file, settings)
        state = store.reset_quota_state()
        typer.echo(f"reset: circuit={state.circuit_state.value}, version={state.version}")

    @app.command("complete")
    def complete_command(
        prompt: str = typer.Option(..., "--prompt"),
        state_file: Path | None = typer.Option(None, "--state-file"),
        model: str | None = typer.Option(None, "--model"),
        max_tokens: int | None = typer.Option(None, "--max-tokens"),
        temperature: float | None = typer.Option(None, "--temperature"),
    ) -> None:
        """ガバナー経由で補完を1回実行する。"""

        settings = GovernorSettings.from_env()
        store = _store_for(state_file, settings)
        with Governor(store=store, settings=settings) as governor:
            try:
                result = governor.complete(
                    [{"role": "user", "content": prompt}],
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except GovernorError as exc:
                typer.echo(f"{type(exc).__name__}: {exc}", err=True)
                raise typer.Exit(code=2) from exc
        choices = result.data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content", "")
        typer.echo(content)
        typer.echo(f"[{result.strategy.value}, {result.latency_ms}ms]", err=True)

    return app


def app_entry() -> None:
    """CLIアプリを起動する。"""

    build_app()()


if __name__ == "__main__":
    app_entry()
