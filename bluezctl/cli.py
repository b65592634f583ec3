"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import typer

from bluezctl.api import Client
from bluezctl.core.errors import BluezctlError
from bluezctl.core.events import CharacteristicValueChanged, StreamOverflowed
from bluezctl.core.model import describe_uuid

app = typer.Typer(help="Inspect and drive Bluetooth LE devices through BlueZ")


@dataclass
class _Options:
    config: Path | None = None


def _hex_payload(value: str) -> bytes:
    normalized = value.strip().lower().replace(" ", "").replace(":", "")
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    try:
        return bytes.fromhex(normalized)
    except ValueError as exc:
        raise typer.BadParameter(f"'{value}' is not a hex string") from exc


async def _open_client(options: _Options) -> Client:
    client = await Client.open(config_path=options.config)
    for warning in getattr(client, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return client


def _run(ctx: typer.Context, action: Callable[[Client], Awaitable[None]]) -> None:
    options: _Options = ctx.obj or _Options()

    async def _main() -> None:
        client = await _open_client(options)
        try:
            await action(client)
        finally:
            await client.close()

    try:
        asyncio.run(_main())
    except BluezctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Path to a config YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    ctx.obj = _Options(config=config)


@app.command("adapters")
def list_adapters(ctx: typer.Context) -> None:
    """List Bluetooth adapters known to the daemon."""

    async def _action(client: Client) -> None:
        adapters = await client.list_adapters()
        if not adapters:
            typer.echo("No Bluetooth adapters found")
            return
        for adapter in adapters:
            state = "on" if adapter.powered else "off"
            scanning = " scanning" if adapter.discovering else ""
            alias = f" {adapter.alias}" if adapter.alias else ""
            typer.echo(f"{adapter.name} {adapter.address or '?'}{alias} [{state}{scanning}]")

    _run(ctx, _action)


@app.command("scan")
def scan(
    ctx: typer.Context,
    duration: float = typer.Option(5.0, "--duration", help="Seconds to scan"),
    adapter: str | None = typer.Option(None, "--adapter", help="Adapter name, e.g. hci0"),
    uuids: list[str] = typer.Option([], "--uuid", help="Only report devices advertising this service UUID"),
) -> None:
    """Scan for nearby devices and list what was found."""

    async def _action(client: Client) -> None:
        devices = await client.scan(duration, adapter=adapter, service_uuids=uuids)
        if not devices:
            typer.echo("No Bluetooth devices found")
            return
        for device in devices:
            rssi = f" rssi={device.rssi}" if device.rssi is not None else ""
            typer.echo(f"{device.mac_address} {device.name or device.alias or '<unknown>'}{rssi}")

    _run(ctx, _action)


@app.command("devices")
def list_devices(
    ctx: typer.Context,
    adapter: str | None = typer.Option(None, "--adapter", help="Adapter name, e.g. hci0"),
) -> None:
    """List devices the daemon already knows about."""

    async def _action(client: Client) -> None:
        devices = await client.list_devices(adapter)
        if not devices:
            typer.echo("No Bluetooth devices found")
            return
        for device in devices:
            flags = [name for name, on in (("connected", device.connected), ("paired", device.paired)) if on]
            suffix = f" [{', '.join(flags)}]" if flags else ""
            typer.echo(f"{device.mac_address} {device.name or device.alias or '<unknown>'}{suffix}")

    _run(ctx, _action)


@app.command("services")
def list_services(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="MAC address or partial name"),
) -> None:
    """Connect to a device and print its GATT services and characteristics."""

    async def _action(client: Client) -> None:
        for service, characteristics in await client.gatt_database(device):
            typer.echo(f"{service.uuid} {describe_uuid(service.uuid)}")
            for characteristic in characteristics:
                flags = ",".join(characteristic.flags.to_strings())
                typer.echo(f"  {characteristic.uuid} {describe_uuid(characteristic.uuid)} ({flags})")

    _run(ctx, _action)


@app.command("read")
def read_value(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="MAC address or partial name"),
    service_uuid: str = typer.Argument(...),
    characteristic_uuid: str = typer.Argument(...),
) -> None:
    """Read a characteristic value and print it as hex."""

    async def _action(client: Client) -> None:
        value = await client.read(device, service_uuid, characteristic_uuid)
        typer.echo(value.hex())

    _run(ctx, _action)


@app.command("write")
def write_value(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="MAC address or partial name"),
    service_uuid: str = typer.Argument(...),
    characteristic_uuid: str = typer.Argument(...),
    payload: str = typer.Argument(..., help="Hex payload, e.g. 0102ff"),
    no_response: bool = typer.Option(False, "--no-response", help="Write without response"),
) -> None:
    """Write a hex payload to a characteristic."""
    value = _hex_payload(payload)

    async def _action(client: Client) -> None:
        await client.write(device, service_uuid, characteristic_uuid, value, with_response=not no_response)
        typer.echo(f"Wrote {len(value)} bytes to {characteristic_uuid}")

    _run(ctx, _action)


@app.command("watch")
def watch(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="MAC address or partial name"),
    service_uuid: str = typer.Argument(...),
    characteristic_uuid: str = typer.Argument(...),
    duration: float | None = typer.Option(None, "--duration", help="Stop after this many seconds"),
) -> None:
    """Print notifications from a characteristic until interrupted."""

    async def _consume(client: Client) -> None:
        stream = client.notifications(device, service_uuid, characteristic_uuid)
        try:
            async for event in stream:
                if isinstance(event, StreamOverflowed):
                    typer.echo(f"Warning: missed {event.missed} notifications", err=True)
                elif isinstance(event, CharacteristicValueChanged):
                    typer.echo(event.value.hex())
        finally:
            await stream.aclose()

    async def _action(client: Client) -> None:
        if duration is None:
            await _consume(client)
            return
        try:
            await asyncio.wait_for(_consume(client), duration)
        except asyncio.TimeoutError:
            pass

    _run(ctx, _action)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
