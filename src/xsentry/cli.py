"""Thin CLI wrapper over :class:`xsentry.Client`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.syntax import Syntax

from xsentry.client import Client
from xsentry.errors import XSenseError
from xsentry.fields import FIELDS, Field, resolve, type_name
from xsentry.store import Record

app = typer.Typer(help="Monitor X-Sense alarms and sensors.", invoke_without_command=True)

_by_id: dict[str, Field] = {f.id: f for f in FIELDS}

CONNECT_TIMEOUT = 20.0

T = TypeVar("T")


@app.callback()
def main(
    ctx: typer.Context,
    email: str | None = typer.Option(None, envvar="XSENSE_EMAIL", help="X-Sense account email"),
    password: str | None = typer.Option(
        None, envvar="XSENSE_PASSWORD", help="X-Sense account password"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log API and MQTT traffic"),
) -> None:
    """Monitor X-Sense alarms and sensors."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    ctx.obj = {"email": email, "password": password}
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY and compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2, default=str), "json"))
    else:
        typer.echo(json.dumps(obj, default=str))


def _credentials(ctx: typer.Context) -> tuple[str, str]:
    obj = ctx.obj or {}
    email = obj.get("email") or typer.prompt("Email")
    password = obj.get("password") or typer.prompt("Password", hide_input=True)
    return email, password


def _run(ctx: typer.Context, fn: Callable[[Client], Awaitable[T]]) -> T:
    """Log in, run *fn* with the client and tear it down; exit 1 on API errors."""
    email, password = _credentials(ctx)

    async def runner() -> T:
        client = await Client.login(email, password)
        try:
            return await fn(client)
        finally:
            await client.destroy()

    try:
        return asyncio.run(runner())
    except XSenseError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1) from None


def _find_device(client: Client, key: str) -> Record:
    device = client.store.get_device(key) or client.store.device_by_sn(key)
    if device is None:
        typer.echo(f"Unknown device '{key}'. Run `xsentry devices` for the list.", err=True)
        raise typer.Exit(1)
    return device


def _find_station(client: Client, key: str) -> Record:
    station = client.store.get_station(key) or client.store.station_by_sn(key)
    if station is None:
        typer.echo(f"Unknown station '{key}'. Run `xsentry devices` for the list.", err=True)
        raise typer.Exit(1)
    return station


def _label(key: str, value: object) -> tuple[str, str]:
    f = _by_id.get(key)
    if f:
        return f"{f.name} ({f.slug})", f.format_value(value)
    return key, str(value)


async def _connected_channel(client: Client, station: Record) -> None:
    channel = await client.connect_realtime(station["houseId"], station["stationId"])
    if not await channel.wait_connected(CONNECT_TIMEOUT):
        typer.echo("Could not connect to the X-Sense MQTT broker.", err=True)
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def devices(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List every house, station and device on the account."""

    async def fetch(client: Client) -> tuple[list[Record], list[Record], list[Record]]:
        return client.houses, client.stations, client.devices

    houses, stations, all_devices = _run(ctx, fetch)
    if as_json:
        _print_json({"houses": houses, "stations": stations, "devices": all_devices})
        return
    if not all_devices:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)

    for house in houses:
        typer.echo(typer.style(str(house.get("houseName") or house["houseId"]), bold=True))
        for station in (s for s in stations if s["houseId"] == house["houseId"]):
            typer.echo(
                f"  {station.get('stationName') or station['stationSn']} — "
                f"{type_name(station['stationType'])} (SN: {station['stationSn']})"
            )
            for dev in (d for d in all_devices if d["stationId"] == station["stationId"]):
                typer.echo(f"    [{dev['id']}] {dev['deviceName']} — {type_name(dev['type'])}")
                typer.echo(f"        SN: {dev['deviceSn']}")


@app.command("get", context_settings={"help_option_names": ["-h", "--help"]})
def get_device(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device id or serial"),
    name: str | None = typer.Argument(None, help="Field name or raw key"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show the current state of one device.

    \b
    Without a field name, shows every known field.
    Accepts CLI names (battery, co) and raw keys (batInfo, coPpm).
    """

    async def fetch(client: Client) -> Record:
        return dict(_find_device(client, device))

    record = _run(ctx, fetch)

    if name is not None:
        f = resolve(name)
        if f is None:
            typer.echo(f"Unknown field '{name}'.", err=True)
            raise typer.Exit(1)
        if f.id not in record:
            typer.echo(f"Field '{name}' ({f.id}) not reported by device.", err=True)
            raise typer.Exit(1)
        if as_json:
            _print_json({f.id: record[f.id]})
        else:
            typer.echo(f"{f.name}: {f.format_value(record[f.id])}")
        return

    if as_json:
        _print_json(record)
        return

    is_tty = sys.stdout.isatty()
    title = f"{record['deviceName']} — {type_name(record['type'])}"
    typer.echo(typer.style(title, bold=True) if is_tty else title)
    known = [f for f in FIELDS if f.id in record]
    for f in known:
        label = f"{f.name} ({f.slug})"
        formatted = f.format_value(record[f.id])
        typer.echo(f"  {typer.style(label, fg='cyan') if is_tty else label}: {formatted}")


@app.command()
def shadow(
    ctx: typer.Context,
    station: str = typer.Argument(..., help="Station id or serial"),
) -> None:
    """Dump the raw shadow document of a station."""

    async def fetch(client: Client) -> Record:
        return await client.get_station_state(_find_station(client, station)["stationId"])

    document = _run(ctx, fetch)
    if not document:
        typer.echo("No shadow document found.", err=True)
        raise typer.Exit(1)
    _print_json(document)


@app.command()
def watch(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Field name to filter (optional)"),
) -> None:
    """Watch real-time updates from every house via MQTT.

    \b
    Without arguments, shows all field changes.
    With a field name, shows only that field.
    Press Ctrl+C to stop.
    """
    field_filter: Field | None = None
    if name is not None:
        field_filter = resolve(name)
        if field_filter is None:
            typer.echo(f"Unknown field '{name}'.", err=True)
            raise typer.Exit(1)

    with contextlib.suppress(KeyboardInterrupt):
        _run(ctx, lambda client: _watch_async(client, field_filter))


async def _watch_async(client: Client, field_filter: Field | None) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()
    if field_filter:
        typer.echo(f"Watching {field_filter.name} ({field_filter.slug})... (Ctrl+C to stop)")
    else:
        typer.echo("Watching for updates... (Ctrl+C to stop)")

    def on_update(kind: str, record: dict[str, Any]) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        if kind == "health":
            state = "connected" if record["healthy"] else "disconnected, reconnecting..."
            line = f"[{ts}] House {record['houseId']} {state}"
            typer.echo(typer.style(line, fg="yellow") if is_tty else line)
            return
        if kind == "error":
            typer.echo(f"[{ts}] {record.get('message')}", err=True)
            return
        who = str(record.get("deviceName") or record.get("deviceSn"))
        for f in FIELDS:
            if f.id not in record or (field_filter and f.id != field_filter.id):
                continue
            label, formatted = _label(f.id, record[f.id])
            if is_tty:
                typer.echo(
                    f"[{ts}] {typer.style(who, bold=True)} "
                    f"{typer.style(label, fg='cyan')}: {formatted}"
                )
            else:
                typer.echo(f"[{ts}] {who} {label}: {formatted}")

    subscription = client.on_update(on_update)
    try:
        await client.connect_all_realtime()
        await asyncio.Event().wait()
    finally:
        subscription.unsubscribe()


@app.command()
def mute(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device id or serial"),
) -> None:
    """Silence a sounding alarm."""

    async def send(client: Client) -> str:
        record = _find_device(client, device)
        await _connected_channel(client, client.store.stations[record["stationId"]])
        await client.mute_alarm(record["id"])
        return str(record["deviceName"])

    typer.echo(f"Mute command sent to {_run(ctx, send)}.")


@app.command("test-alarm")
def test_alarm(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device id or serial"),
) -> None:
    """Sound a device's self-test."""

    async def send(client: Client) -> str:
        record = _find_device(client, device)
        await _connected_channel(client, client.store.stations[record["stationId"]])
        await client.test_alarm(record["id"])
        return str(record["deviceName"])

    typer.echo(f"Test command sent to {_run(ctx, send)}.")


@app.command("set-config")
def set_config(
    ctx: typer.Context,
    station: str = typer.Argument(..., help="Station id or serial"),
    settings: list[str] = typer.Argument(..., help="KEY=VALUE pairs"),
) -> None:
    """Write settings to a station's configuration shadow.

    \b
    Values are sent as strings, the way the X-Sense app sends them:
      xsentry set-config 12345 alarmVol=2 voiceVol=1
    """
    config: dict[str, str] = {}
    for item in settings:
        key, sep, value = item.partition("=")
        if not sep or not key:
            typer.echo(f"Expected KEY=VALUE, got '{item}'.", err=True)
            raise typer.Exit(1)
        config[key] = value

    async def send(client: Client) -> str:
        record = _find_station(client, station)
        await _connected_channel(client, record)
        await client.set_station_config(record["stationId"], config)
        return str(record.get("stationName") or record["stationSn"])

    typer.echo(f"Configuration sent to {_run(ctx, send)}.")
