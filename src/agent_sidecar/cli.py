import importlib.metadata
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .bootstrap import run_entrypoint, run_once, run_persistent
from .config import ConfigError, WorkerConfig, load_config
from .logging_utils import setup_logging

app = typer.Typer(add_completion=False, help="Agent worker speaking JSON lines on stdio.")


def _sidecar_version() -> str:
    try:
        return importlib.metadata.version("agent-sidecar")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"agent-sidecar {_sidecar_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _load_worker_config(
    config_path: Optional[Path], log_level: Optional[str], mock: bool
) -> WorkerConfig:
    try:
        worker_config = load_config(config_path)
    except ConfigError as exc:
        _raise_exit(f"Invalid sidecar configuration: {exc}", cause=exc)
    if mock:
        worker_config.mock.enabled = True
    setup_logging(worker_config.log, level=log_level)
    return worker_config


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Worker config YAML (defaults to .agent-sidecar/config.yml)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level for stderr"),
    mock: bool = typer.Option(False, "--mock", help="Replay recorded transcripts"),
) -> None:
    """Serve requests from stdin until shutdown or end of input."""
    worker_config = _load_worker_config(config_path, log_level, mock)
    code = run_entrypoint(lambda: run_persistent(worker_config))
    raise typer.Exit(code=code)


@app.command()
def once(
    config_json: str = typer.Argument(..., help="JSON-encoded request config"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Worker config YAML"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level for stderr"),
    mock: bool = typer.Option(False, "--mock", help="Replay recorded transcripts"),
) -> None:
    """Run a single request and exit."""
    worker_config = _load_worker_config(config_path, log_level, mock)
    code = run_entrypoint(lambda: run_once(config_json, worker_config))
    raise typer.Exit(code=code)


if __name__ == "__main__":
    main()
