"""CLI for the shellbridge client command."""

import asyncio
import json
import logging
import sys
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import typer

from ..config import ClientConfig
from ..errors import ConfigError
from ..protocol import ClientType


app = typer.Typer(help="Attach to a shellbridge server", add_completion=False)


def _load_config(url: Optional[str], config_path: Optional[str], **overrides) -> ClientConfig:
    try:
        config = ClientConfig.load(config_path)
        updates = {k: v for k, v in overrides.items() if v is not None}
        if url:
            updates["url"] = url
        if updates:
            config = ClientConfig.model_validate({**config.model_dump(), **updates})
    except (ConfigError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)
    return config


def _status_url(ws_url: str) -> str:
    parts = urlsplit(ws_url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "/status", "", ""))


@app.command()
def attach(
    url: Optional[str] = typer.Argument(None, help="Server URL (default ws://localhost:8999/)"),
    client_type: Optional[ClientType] = typer.Option(None, "--client-type", help="web or electron"),
    client_version: Optional[str] = typer.Option(None, "--client-version", help="Version to announce"),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", help="Reconnect attempts"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="JSON config file"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Write logs here"),
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning, error"),
):
    """
    Attach this terminal to a remote shell.

    Keystrokes go to the shell, its output comes back here. The session
    reconnects on its own after a dropped connection. Press Ctrl-] to detach.

    Examples:
        shellbridge attach
        shellbridge attach ws://build-box:8999/ --client-type web
    """
    # Raw mode owns the terminal; keep log lines out of it unless redirected.
    logging.basicConfig(
        level=log_level.upper(),
        filename=log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = _load_config(
        url, config_path,
        client_type=client_type, version=client_version, max_attempts=max_attempts,
    )
    if not sys.stdin.isatty():
        typer.echo("Error: stdin is not a terminal", err=True)
        raise typer.Exit(code=1)

    code = asyncio.run(_attach_async(config))
    raise typer.Exit(code=code)


async def _attach_async(config: ClientConfig) -> int:
    """Run one attached session until detach, give-up or version failure."""
    from .console import ConsoleSurface
    from .session import ClientSession

    loop = asyncio.get_running_loop()
    surface = ConsoleSurface()
    session = ClientSession(surface, config)
    session.resize(*surface.size())
    pending = set()

    def on_input(text: str) -> None:
        task = loop.create_task(session.send_input(text))
        pending.add(task)
        task.add_done_callback(pending.discard)

    def on_detach() -> None:
        task = loop.create_task(session.close())
        pending.add(task)
        task.add_done_callback(pending.discard)

    with surface.raw_mode():
        surface.attach(loop, on_input, session.resize, on_detach)
        try:
            await session.start()
            await session.wait_stopped()
        finally:
            surface.detach(loop)
            await session.close()

    return 3 if session.fatal_error else 0


@app.command()
def status(
    url: Optional[str] = typer.Argument(None, help="Server URL (default ws://localhost:8999/)"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="JSON config file"),
):
    """Show the server's connections and shell state."""
    import httpx

    config = _load_config(url, config_path)
    endpoint = _status_url(config.url)
    try:
        response = httpx.get(endpoint, timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(response.json(), indent=2))


if __name__ == "__main__":
    app()
