"""CLI for shellbridge-server command."""

import logging
from typing import Optional

import typer

from ..config import PtyPolicy, ServerConfig
from ..errors import ConfigError


app = typer.Typer(
    help="Serve a host shell over WebSocket",
    add_completion=False,
)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on (default 8999)"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind to"),
    policy: Optional[PtyPolicy] = typer.Option(None, "--policy", help="shared or per_connection"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Shell working directory"),
    shell: Optional[str] = typer.Option(None, "--shell", help="Shell binary to run"),
    version: Optional[str] = typer.Option(None, "--server-version", help="Advertised server version"),
    idle_timeout: Optional[float] = typer.Option(
        None, "--idle-timeout", help="Kill the shared shell after N idle seconds"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="JSON config file"),
    log_level: str = typer.Option("info", "--log-level", help="debug, info, warning, error"),
):
    """
    Start the terminal bridge server.

    Every client connects to ws://HOST:PORT/, completes the version
    handshake, and then shares one shell (or gets its own with
    --policy per_connection).

    Examples:
        # Start on default port 8999
        shellbridge-server

        # Start on custom port, bound to localhost only
        shellbridge-server --port 9000 --host 127.0.0.1
    """
    import uvicorn
    from .service import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ServerConfig.load(config_path)
        overrides = {
            "port": port,
            "host": host,
            "pty_policy": policy,
            "cwd": cwd,
            "shell": shell,
            "version": version,
            "idle_timeout": idle_timeout,
        }
        updates = {k: v for k, v in overrides.items() if v is not None}
        if updates:
            config = ServerConfig.model_validate({**config.model_dump(), **updates})
    except (ConfigError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)

    typer.echo("Starting shellbridge server")
    typer.echo(f"   Host: {config.host}")
    typer.echo(f"   Port: {config.port}")
    typer.echo(f"   Version: {config.semver}")
    typer.echo(f"   PTY policy: {config.pty_policy.value}")

    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=log_level.lower())


if __name__ == "__main__":
    app()
