"""Stable public API for building tooling on top of fclink.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass

from fclink.core.errors import (
    CodecLoadError,
    ConnectRejectedError,
    ConnectTimeoutError,
    FclinkError,
    HandshakeError,
    HandshakeExhaustedError,
    IncompatibleProtocolVersionError,
    RadioUnavailableError,
    RegistryError,
    RegistryLoadError,
    RegistryValidationError,
    SettingsError,
    TransportError,
)
from fclink.core.events import (
    DidConnect,
    DidDisconnect,
    DidDiscoverNewPeripheral,
    DidExhaustHandshake,
    DidFailToConnect,
    DidRejectFirmware,
    DidShowMessage,
    DidStopScanning,
    DidUpdateRadioState,
    Event,
    EventBus,
    WillAutoConnect,
)
from fclink.core.model import (
    ConnectionPhase,
    ConnectionState,
    DiscoveredPeripheral,
    KnownDevice,
    PeripheralRef,
    RadioState,
    WriteMode,
)
from fclink.core.registry import DeviceRegistry
from fclink.core.scheduler import Scheduler
from fclink.core.session import SerialSession
from fclink.core.settings import Settings, load_settings
from fclink.transports.base import Central, CodecFactory, MessageCodec

__all__ = [
    "FclinkError",
    "CodecLoadError",
    "ConnectRejectedError",
    "ConnectTimeoutError",
    "HandshakeError",
    "HandshakeExhaustedError",
    "IncompatibleProtocolVersionError",
    "RadioUnavailableError",
    "RegistryError",
    "RegistryLoadError",
    "RegistryValidationError",
    "SettingsError",
    "TransportError",
    "DidConnect",
    "DidDisconnect",
    "DidDiscoverNewPeripheral",
    "DidExhaustHandshake",
    "DidFailToConnect",
    "DidRejectFirmware",
    "DidShowMessage",
    "DidStopScanning",
    "DidUpdateRadioState",
    "WillAutoConnect",
    "Event",
    "EventBus",
    "ConnectionPhase",
    "ConnectionState",
    "DiscoveredPeripheral",
    "KnownDevice",
    "PeripheralRef",
    "RadioState",
    "WriteMode",
    "DeviceRegistry",
    "SerialSession",
    "Settings",
    "Central",
    "MessageCodec",
    "CodecFactory",
    "ConnectResult",
    "Client",
    "load_codec_factory",
]

_NO_AUTO_CONNECT = Settings(auto_connect_new=False, auto_connect_known=False)


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a verified connection."""

    peripheral: PeripheralRef
    write_mode: WriteMode
    api_version: tuple[int, int] | None


def load_codec_factory(target: str) -> CodecFactory:
    """Import a codec factory given as ``package.module:attribute``."""
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise CodecLoadError(f"Codec '{target}' must look like 'package.module:factory'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CodecLoadError(f"Could not import codec module '{module_name}': {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise CodecLoadError(f"Codec module '{module_name}' has no callable '{attribute}'")
    return factory


class Client:
    """Public client for scanning, connecting, and managing known devices.

    A `Client` owns one `SerialSession` for its lifetime. Use it as an async
    context manager from inside a running event loop::

        async with Client(codec_factory=my_codec) as client:
            result = await client.connect()
    """

    def __init__(
        self,
        *,
        central: Central | None = None,
        codec_factory: CodecFactory | None = None,
        registry: DeviceRegistry | None = None,
        settings: Settings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if central is None:
            from fclink.transports.ble_gatt import BleakCentral

            central = BleakCentral()
        self.central = central
        self.session = SerialSession(
            central,
            registry if registry is not None else DeviceRegistry.load(),
            settings or load_settings(),
            scheduler=scheduler,
        )
        if codec_factory is not None:
            self.session.attach_codec(codec_factory(self.session.write_bytes))

    @property
    def registry(self) -> DeviceRegistry:
        return self.session.registry

    @property
    def events(self) -> EventBus:
        return self.session.bus

    async def open(self) -> RadioState:
        opener = getattr(self.central, "open", None)
        if opener is not None:
            await opener()
        return self.session.radio_state

    async def close(self) -> None:
        if self.session.is_scanning:
            self.session.stop_scan()
        self.session.disconnect()
        closer = getattr(self.central, "close", None)
        if closer is not None:
            await closer()

    async def __aenter__(self) -> Client:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def known_devices(self) -> list[KnownDevice]:
        return list(self.registry.devices)

    def forget(self, identity: str) -> bool:
        removed = self.registry.remove(identity)
        if removed:
            self.registry.persist()
        return removed

    async def scan(self, timeout_s: float = 5.0) -> list[DiscoveredPeripheral]:
        """Scan without auto-connecting and return peripherals, strongest first."""
        await self._require_radio()
        settings = self.session.settings
        self.session.settings = _NO_AUTO_CONNECT
        try:
            self.session.start_scan()
            await asyncio.sleep(timeout_s)
            if self.session.is_scanning:
                self.session.stop_scan()
        finally:
            self.session.settings = settings
        return list(reversed(self.session.discovered))

    async def connect(
        self,
        identity: str | None = None,
        *,
        timeout_s: float = 30.0,
        connect_anyway: bool = False,
    ) -> ConnectResult:
        """Connect and verify a flight controller.

        Without ``identity`` the auto-connect settings pick the device. With
        it, only that device is connected once it is discovered.
        """
        await self._require_radio()
        settings = self.session.settings
        if identity is not None:
            self.session.settings = _NO_AUTO_CONNECT
        try:
            with self.events.channel() as events:
                self.session.start_scan()
                try:
                    return await asyncio.wait_for(
                        self._await_outcome(events, identity, connect_anyway),
                        timeout_s,
                    )
                except asyncio.TimeoutError:
                    if self.session.is_scanning:
                        self.session.stop_scan()
                    self.session.disconnect()
                    target = identity or "an auto-connect device"
                    raise ConnectTimeoutError(f"No verified connection to {target} after {timeout_s:g}s") from None
        finally:
            self.session.settings = settings

    def disconnect(self) -> None:
        self.session.disconnect()

    async def _await_outcome(
        self,
        events: asyncio.Queue[Event],
        identity: str | None,
        connect_anyway: bool,
    ) -> ConnectResult:
        wanted = identity.strip().upper() if identity else None
        while True:
            event = await events.get()
            if isinstance(event, DidDiscoverNewPeripheral):
                if wanted and event.peripheral.identifier.upper() == wanted and not self.session.connections.in_flight:
                    self.session.stop_scan()
                    self.session.connect(event.peripheral)
            elif isinstance(event, DidExhaustHandshake):
                self.session.resolve_unresponsive(connect_anyway)
            elif isinstance(event, DidConnect):
                codec = self.session.codec
                return ConnectResult(
                    peripheral=event.peripheral,
                    write_mode=event.write_mode,
                    api_version=codec.api_version if codec is not None else None,
                )
            elif isinstance(event, DidFailToConnect):
                raise event.reason or ConnectRejectedError("Connection failed")
            elif isinstance(event, DidDisconnect):
                raise event.reason or ConnectRejectedError("Link dropped before the connection was announced")
            elif isinstance(event, DidUpdateRadioState) and event.state is not RadioState.POWERED_ON:
                raise RadioUnavailableError(f"Bluetooth radio is {event.state.value}")

    async def _require_radio(self) -> None:
        if self.session.radio_state is not RadioState.POWERED_ON:
            await self.open()
        state = self.session.radio_state
        if state is not RadioState.POWERED_ON:
            raise RadioUnavailableError(
                f"Bluetooth radio is {state.value}. Ensure an adapter is present and powered on."
            )
