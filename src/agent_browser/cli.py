"""Command line interface for agent-browser."""

from __future__ import annotations

import json
import logging
import subprocess
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .client import DaemonClient, DaemonConnectionError, wait_for_daemon
from .config import DaemonSettings, load_settings
from .daemon.server import run_daemon
from .daemon.transport import (
    SessionContext,
    connection_info,
    ensure_run_dir,
    is_daemon_running,
    list_sessions,
    read_pid,
    read_stream_port,
)

app = typer.Typer(help="Agent browser session daemon and client")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to YAML configuration."),
]
EnvFileOption = Annotated[
    Optional[Path],
    typer.Option("--env-file", help="Path to an .env file with default configuration values."),
]
SessionOption = Annotated[
    Optional[str],
    typer.Option("--session", "-s", help="Session name (defaults to AGENT_BROWSER_SESSION)."),
]
HomeOption = Annotated[
    Optional[Path],
    typer.Option("--home", help="Directory holding runtime files and saved state."),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("agent-browser"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


def _settings(
    config_path: Optional[Path],
    env_file: Optional[Path],
    **overrides: Any,
) -> DaemonSettings:
    return load_settings(config_path, env_file=env_file, **overrides)


def _context(settings: DaemonSettings) -> SessionContext:
    try:
        return SessionContext(settings.session, settings.home, settings.use_tcp)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--session") from exc


@app.command()
def daemon(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    session: SessionOption = None,
    home: HomeOption = None,
    headed: Annotated[
        Optional[bool],
        typer.Option("--headed/--headless", help="Show the browser window on implicit launch."),
    ] = None,
    stream_port: Annotated[
        Optional[int],
        typer.Option("--stream-port", help="WebSocket port for viewport streaming (0 disables)."),
    ] = None,
    backend: Annotated[
        Optional[str],
        typer.Option("--backend", help="Browser backend: native or playwright-mcp."),
    ] = None,
    persist: Annotated[
        Optional[bool],
        typer.Option("--persist/--no-persist", help="Save and restore authentication state."),
    ] = None,
) -> None:
    """Run the session daemon in the foreground."""

    settings = _settings(
        config_path,
        env_file,
        session=session,
        home=str(home) if home else None,
        headed=headed,
        stream_port=stream_port,
        backend=backend,
        persist=persist,
    )
    ctx = _context(settings)
    if is_daemon_running(ctx):
        typer.echo(f"Session {ctx.name} is already running", err=True)
        raise typer.Exit(code=1)
    code = run_daemon(settings)
    if code:
        raise typer.Exit(code=code)


@app.command()
def start(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    session: SessionOption = None,
    home: HomeOption = None,
    headed: Annotated[
        Optional[bool],
        typer.Option("--headed/--headless", help="Show the browser window on implicit launch."),
    ] = None,
    stream_port: Annotated[
        Optional[int],
        typer.Option("--stream-port", help="WebSocket port for viewport streaming (0 disables)."),
    ] = None,
    backend: Annotated[
        Optional[str],
        typer.Option("--backend", help="Browser backend: native or playwright-mcp."),
    ] = None,
    persist: Annotated[
        Optional[bool],
        typer.Option("--persist/--no-persist", help="Save and restore authentication state."),
    ] = None,
    timeout: Annotated[
        float,
        typer.Option("--timeout", help="Seconds to wait for the daemon to accept connections."),
    ] = 10.0,
) -> None:
    """Start the session daemon in the background unless it already runs."""

    settings = _settings(
        config_path,
        env_file,
        session=session,
        home=str(home) if home else None,
        headed=headed,
        stream_port=stream_port,
        backend=backend,
        persist=persist,
    )
    ctx = _context(settings)
    if is_daemon_running(ctx):
        typer.echo(f"Session {ctx.name} already running ({connection_info(ctx).describe()})")
        return

    args = [sys.executable, "-m", "agent_browser.cli", "daemon", "--session", ctx.name]
    args += ["--home", str(settings.home)]
    if config_path is not None:
        args += ["--config", str(config_path)]
    if env_file is not None:
        args += ["--env-file", str(env_file)]
    if headed is not None:
        args.append("--headed" if headed else "--headless")
    if stream_port is not None:
        args += ["--stream-port", str(stream_port)]
    if backend is not None:
        args += ["--backend", backend]
    if persist is not None:
        args.append("--persist" if persist else "--no-persist")

    ensure_run_dir(ctx)
    with ctx.log_path.open("ab") as log_file:
        subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    if not wait_for_daemon(ctx, timeout=timeout):
        typer.echo(f"Daemon did not start; see {ctx.log_path}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Started session {ctx.name} ({connection_info(ctx).describe()})")


@app.command()
def send(
    command: Annotated[
        str,
        typer.Argument(help="JSON command, or '-' to read one command per line from stdin."),
    ],
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    session: SessionOption = None,
    home: HomeOption = None,
) -> None:
    """Send raw protocol commands to a running daemon and print the responses."""

    settings = _settings(config_path, env_file, session=session, home=str(home) if home else None)
    ctx = _context(settings)
    if command == "-":
        lines = [line for line in sys.stdin.read().splitlines() if line.strip()]
    else:
        lines = [command]

    failed = False
    try:
        with DaemonClient(ctx) as client:
            for line in lines:
                response = client.send_line(line)
                typer.echo(json.dumps(response.model_dump(exclude_none=True)))
                failed = failed or not response.success
    except DaemonConnectionError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    if failed:
        raise typer.Exit(code=1)


@app.command()
def status(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    session: SessionOption = None,
    home: HomeOption = None,
) -> None:
    """Show running state and addresses of known sessions."""

    settings = _settings(config_path, env_file, session=session, home=str(home) if home else None)
    names = set(list_sessions(settings.home))
    if session is not None:
        names.add(settings.session)
    table = Table(title="agent-browser sessions")
    table.add_column("Session")
    table.add_column("Running")
    table.add_column("PID")
    table.add_column("Address")
    table.add_column("Stream")
    for name in sorted(names):
        ctx = _context(settings.model_copy(update={"session": name}))
        running = is_daemon_running(ctx)
        pid = read_pid(ctx) if running else None
        stream_port = read_stream_port(ctx) if running else None
        table.add_row(
            name,
            "yes" if running else "no",
            str(pid) if pid is not None else "-",
            connection_info(ctx).describe() if running else "-",
            f"ws://{settings.stream_host}:{stream_port}/" if stream_port else "-",
        )
    Console().print(table)


@app.command()
def stop(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    session: SessionOption = None,
    home: HomeOption = None,
) -> None:
    """Close the browser and stop the session daemon."""

    settings = _settings(config_path, env_file, session=session, home=str(home) if home else None)
    ctx = _context(settings)
    if not is_daemon_running(ctx):
        typer.echo(f"Session {ctx.name} is not running")
        return
    try:
        with DaemonClient(ctx) as client:
            response = client.send("close")
    except DaemonConnectionError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    if not response.success:
        typer.echo(response.error or "close failed", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Stopped session {ctx.name}")


if __name__ == "__main__":
    app()
