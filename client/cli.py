#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from shared.crypto.auth import derive_auth_key
from shared.envelope import RequestResponse
from shared.errors import ObsProtocolError, RequestFailedError
from shared.log import get_logger
from .config import ConfigError, ConnectionConfig, load_config
from .recorder import Recorder, RecordRequest
from .session import RemoteSession

app = typer.Typer(help="obs-websocket remote control")
console = Console()
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML file with an 'obs:' section"),
    host: Optional[str] = typer.Option(None, help="Server host (overrides config/env)"),
    port: Optional[int] = typer.Option(None, help="Server port (overrides config/env)"),
    password: Optional[str] = typer.Option(None, help="Server password (overrides config/env)"),
):
    """Connection options shared by every command."""
    ctx.obj = {"config": config, "host": host, "port": port, "password": password}


def _config(ctx: typer.Context) -> ConnectionConfig:
    opts = ctx.obj or {}
    try:
        return load_config(opts.get("config"), host=opts.get("host"), port=opts.get("port"),
                           password=opts.get("password"))
    except ConfigError as e:
        console.print(f"[red]Config error[/]: {e}")
        raise typer.Exit(code=2)


def _parse_fields(pairs: List[str]) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"expected key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        fields[key] = value
    return fields


def _print_response(resp: RequestResponse) -> None:
    status = "[green]ok[/]" if resp.ok else f"[red]failed ({resp.status.code})[/]"
    console.print(f"[bold]{resp.request_type}[/] {status}")
    if resp.status.comment:
        console.print(resp.status.comment, markup=False)
    if not resp.response_data:
        return
    table = Table()
    table.add_column("Field")
    table.add_column("Value")
    for key, value in resp.response_data.items():
        table.add_row(key, json.dumps(value) if not isinstance(value, str) else value)
    console.print(table)


def _run(config: ConnectionConfig, issue: Callable[[Recorder], List["Future[RequestResponse]"]]) -> None:
    """Connect, let issue() submit requests, print responses in order.

    Exits 1 if the server rejected any of them.
    """

    async def main_loop() -> int:
        failures = 0
        async with RemoteSession(config) as session:
            for future in issue(Recorder(session.connection)):
                try:
                    resp = await asyncio.wrap_future(future)
                except RequestFailedError as e:
                    resp = e.response
                    failures += 1
                _print_response(resp)
        return failures

    try:
        failures = asyncio.run(main_loop())
    except ObsProtocolError as e:
        logger.error(f"Command failed: {e}")
        console.print(f"[red]{type(e).__name__}[/]: {e}")
        raise typer.Exit(code=1)
    if failures:
        raise typer.Exit(code=1)


@app.command("auth-key")
def auth_key(password: str, salt: str, challenge: str):
    """Print the authentication string for a password/salt/challenge."""
    console.print(derive_auth_key(password, salt, challenge))


@app.command()
def request(
    ctx: typer.Context,
    request_type: str = typer.Argument(..., help="e.g. GetRecordStatus"),
    fields: Optional[List[str]] = typer.Argument(None, help="requestData as key=value pairs"),
):
    """Send one request and print its response."""
    data = _parse_fields(fields or [])
    _run(_config(ctx), lambda rec: [rec.get(request_type, data)])


@app.command()
def record(ctx: typer.Context, action: str = typer.Argument(..., help="start|stop|toggle|pause|resume|toggle-pause")):
    """Control the record output."""
    try:
        req = RecordRequest.from_string(action)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    _run(_config(ctx), lambda rec: [rec.record(req)])


@app.command()
def mute(ctx: typer.Context, input_name: str):
    """Toggle mute on an input."""
    _run(_config(ctx), lambda rec: [rec.toggle_input_mute(input_name)])


@app.command("profile-param")
def profile_param(ctx: typer.Context, category: str, name: str):
    """Read one profile parameter."""
    _run(_config(ctx), lambda rec: [rec.get_profile_parameter(category, name)])


@app.command("record-dir")
def record_dir(ctx: typer.Context, directory: str, file_name: str):
    """Set the simple-output recording directory and filename format."""
    _run(_config(ctx), lambda rec: rec.set_record_directory(directory, file_name))


@app.command()
def listen(ctx: typer.Context):
    """Print events until interrupted."""
    config = _config(ctx)

    async def main_loop() -> None:
        async with RemoteSession(config) as session:
            console.print(f"[bold green]Listening[/] on {config.url} (Ctrl+C to stop)")
            async for event in session.events():
                console.print(f"[cyan]{event.event_type}[/] {json.dumps(event.event_data)}")

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        pass
    except ObsProtocolError as e:
        console.print(f"[red]{type(e).__name__}[/]: {e}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
