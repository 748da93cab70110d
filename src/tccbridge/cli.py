"""Thin CLI wrapper over :class:`tccbridge.Client` and :class:`tccbridge.SyncEngine`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path

import aiohttp
import typer
from rich.console import Console
from rich.syntax import Syntax

from tccbridge._constants import CONFIG_FILE
from tccbridge.bridge import BridgeClient
from tccbridge.client import Client
from tccbridge.config import Config
from tccbridge.errors import TccError
from tccbridge.models import EventSource, ThermostatState
from tccbridge.store import JsonStore
from tccbridge.sync import SyncEngine

_LOGGER = logging.getLogger(__name__)

app = typer.Typer(
    help="Bridge Total Connect Comfort thermostats to a smart-home protocol bridge.",
    invoke_without_command=True,
)

_FAILURES = (TccError, aiohttp.ClientError, TimeoutError)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(CONFIG_FILE, "--config", help="Path to config.json"),
    debug: bool = typer.Option(False, "--debug", help="Log requests and responses"),
) -> None:
    """Bridge Total Connect Comfort thermostats to a smart-home protocol bridge."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.meta["config_path"] = config
    try:
        ctx.obj = Config.load(config)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _ensure_client(config: Config) -> Client:
    """Load saved credentials or exit with an error."""
    try:
        return Client.from_saved(config)
    except FileNotFoundError:
        typer.echo("No saved credentials. Run `tccbridge login` first.", err=True)
        raise typer.Exit(1) from None
    except ValueError:
        typer.echo("Saved credentials are unreadable. Run `tccbridge login` again.", err=True)
        raise typer.Exit(1) from None


def _fail(what: str, e: Exception) -> typer.Exit:
    _LOGGER.debug("%s failed", what, exc_info=e)
    typer.echo(f"{what} failed. Run with --debug for details.", err=True)
    return typer.Exit(1)


def _format_state(state: ThermostatState) -> str:
    equipment = "heating" if state.is_heating else "cooling" if state.is_cooling else "idle"
    u = state.units
    return (
        f"{state.name or state.device_id} [{state.device_id}]: "
        f"{state.current_temp:.1f}°{u}, humidity {state.humidity}%, "
        f"mode {state.system_mode.value} ({equipment}), "
        f"heat {state.heat_setpoint:.1f}°{u}, cool {state.cool_setpoint:.1f}°{u}"
    )


async def _poll(config: Config, client: Client) -> list[ThermostatState]:
    async with client:
        engine = SyncEngine(client, JsonStore(config.state_path))
        return await engine.poll_once()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    ctx: typer.Context,
    username: str = typer.Option(..., prompt=True, help="Total Connect Comfort username"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, help="Total Connect Comfort password"
    ),
) -> None:
    """Verify credentials against the portal and save them locally."""
    config: Config = ctx.obj
    client = Client.from_config(config)
    client.set_credentials(username, password)
    typer.echo(f"Logging in as {username}...")

    async def _test() -> list[ThermostatState]:
        async with client:
            return await SyncEngine(client, JsonStore(config.state_path)).test_connection()

    try:
        found = asyncio.run(_test())
    except _FAILURES as e:
        raise _fail("Login", e) from None

    client.save_credentials(config)
    config_path: Path = ctx.meta["config_path"]
    if not config_path.exists():
        config.save(config_path)
    if not found:
        typer.echo("Logged in, but no devices found.", err=True)
    else:
        typer.echo(f"Logged in. {len(found)} device(s) found.")


@app.command()
def devices(ctx: typer.Context) -> None:
    """List thermostats on the account."""
    config: Config = ctx.obj
    client = _ensure_client(config)
    found = asyncio.run(_poll(config, client))
    if not found:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)
    for state in found:
        typer.echo(f"  [{state.device_id}] {state.name or '(unnamed)'}")


@app.command()
def status(
    ctx: typer.Context,
    device_id: int | None = typer.Argument(None, help="Device id (default: all)"),
    as_json: bool = typer.Option(False, "--json", help="Print raw state as JSON"),
) -> None:
    """Show the current state of one or all thermostats."""
    config: Config = ctx.obj
    client = _ensure_client(config)
    found = asyncio.run(_poll(config, client))
    if device_id is not None:
        found = [s for s in found if s.device_id == device_id]
    if not found:
        typer.echo("No matching devices.", err=True)
        raise typer.Exit(1)

    if as_json:
        _print_json([s.to_dict() for s in found])
        return
    for state in found:
        typer.echo(_format_state(state))


@app.command("set")
def set_setpoint(
    ctx: typer.Context,
    kind: str = typer.Argument(..., help="heat | cool"),
    value: float = typer.Argument(..., help="Target temperature"),
    device: int | None = typer.Option(None, "--device", help="Device id (default: first)"),
    celsius: bool = typer.Option(False, "--celsius", help="VALUE is in Celsius"),
) -> None:
    """Set and hold the heating or cooling setpoint."""
    config: Config = ctx.obj
    if kind not in ("heat", "cool"):
        typer.echo(f"Invalid setpoint '{kind}'. Expected: heat | cool", err=True)
        raise typer.Exit(1)
    client = _ensure_client(config)

    async def _set() -> ThermostatState | None:
        async with client:
            engine = SyncEngine(client, JsonStore(config.state_path))
            return await engine.set_setpoint(
                kind, value, device, celsius=celsius, source=EventSource.USER
            )

    try:
        state = asyncio.run(_set())
    except _FAILURES as e:
        raise _fail("Setpoint change", e) from None
    typer.echo(_format_state(state) if state else f"{kind.capitalize()} setpoint sent.")


@app.command()
def mode(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="off | heat | cool | auto | emergency"),
    device: int | None = typer.Option(None, "--device", help="Device id (default: first)"),
) -> None:
    """Change the system mode."""
    config: Config = ctx.obj
    client = _ensure_client(config)

    async def _set() -> ThermostatState | None:
        async with client:
            engine = SyncEngine(client, JsonStore(config.state_path))
            return await engine.set_mode(name, device, source=EventSource.USER)

    try:
        state = asyncio.run(_set())
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    except _FAILURES as e:
        raise _fail("Mode change", e) from None
    typer.echo(_format_state(state) if state else "Mode change sent.")


@app.command()
def events(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events to show"),
    as_json: bool = typer.Option(False, "--json", help="Print events as JSON"),
) -> None:
    """Show the most recent events, newest first."""
    config: Config = ctx.obj
    recent = JsonStore(config.state_path).get_events(limit=limit)
    if as_json:
        _print_json([e.to_dict() for e in recent])
        return
    if not recent:
        typer.echo("No events.")
        return
    for event in recent:
        ts = event.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        typer.echo(f"[{ts}] {event.source.value:<7} {event.event_type.value:<12} {event.message}")


@app.command()
def run(ctx: typer.Context) -> None:
    """Poll the portal and serve bridge commands until Ctrl+C."""
    config: Config = ctx.obj
    client = _ensure_client(config)
    typer.echo(
        f"Polling every {config.poll_interval}s, bridge at {config.bridge_url}... (Ctrl+C to stop)"
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run_async(config, client))


async def _run_async(config: Config, client: Client) -> None:
    """Async implementation of the run command."""
    bridge = BridgeClient(config.bridge_url)
    engine = SyncEngine(
        client,
        JsonStore(config.state_path),
        bridge,
        poll_interval=config.poll_interval,
    )
    subscription = await bridge.listen(engine.handle_command)
    try:
        await asyncio.gather(engine.run(), subscription.wait())
    finally:
        await subscription.stop()
        await bridge.close()
        await client.close()
