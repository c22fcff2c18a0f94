"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging

import typer

from fclink.api import Client, ConnectResult, load_codec_factory
from fclink.core.errors import FclinkError
from fclink.core.model import DiscoveredPeripheral

app = typer.Typer(help="Connect to MSP flight controllers over BLE serial bridges")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_client(codec: str | None = None) -> Client:
    factory = load_codec_factory(codec) if codec else None
    return Client(codec_factory=factory)


async def _scan(client: Client, timeout: float) -> list[DiscoveredPeripheral]:
    async with client:
        return await client.scan(timeout)


async def _connect(client: Client, device: str | None, timeout: float, force: bool) -> ConnectResult:
    async with client:
        return await client.connect(device, timeout_s=timeout, connect_anyway=force)


@app.command("scan")
def scan(
    timeout: float = typer.Option(5.0, "--timeout", help="Seconds to scan"),
) -> None:
    """List nearby serial bridges, strongest signal first."""
    try:
        client = _build_client()
        found = asyncio.run(_scan(client, timeout))
        if not found:
            typer.echo("No serial bridges found")
            return

        for entry in found:
            peripheral = entry.peripheral
            marker = " (known)" if client.registry.lookup(peripheral.identifier) else ""
            typer.echo(f"{peripheral.identifier} {peripheral.display_name} {entry.signal_strength:.0f} dBm{marker}")
    except FclinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices() -> None:
    """List known devices and their remembered write mode."""
    try:
        client = _build_client()
        devices = client.known_devices()
        if not devices:
            typer.echo("No known devices")
            return

        for device in devices:
            auto = "auto-connect" if device.auto_connect else "manual"
            typer.echo(f"{device.identity} {device.name} write={device.write_mode.value} {auto}")
    except FclinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("forget")
def forget(identity: str) -> None:
    """Remove a device from the known-device registry."""
    try:
        client = _build_client()
        if not client.forget(identity):
            typer.echo(f"Error: No known device '{identity}'", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Forgot {identity}")
    except FclinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("connect")
def connect(
    codec: str = typer.Option(..., "--codec", help="MSP codec factory as package.module:factory"),
    device: str | None = typer.Option(None, "--device", help="Identity to connect to (default: auto-connect)"),
    timeout: float = typer.Option(30.0, "--timeout", help="Seconds to wait for a verified link"),
    force: bool = typer.Option(False, "--force", help="Keep the link if the module never answers"),
) -> None:
    """Connect to a flight controller, verify it, then disconnect.

    Without --device, the auto-connect settings choose the controller.
    """
    try:
        client = _build_client(codec)
        result = asyncio.run(_connect(client, device, timeout, force))
        version = ".".join(str(part) for part in result.api_version) if result.api_version else "unknown"
        typer.echo(
            f"Connected to {result.peripheral.identifier} ({result.peripheral.display_name}) "
            f"write={result.write_mode.value} api={version}"
        )
    except FclinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
