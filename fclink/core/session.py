"""The serial session: one BLE link to a flight controller and its engine parts."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fclink.core.connection import ConnectionManager
from fclink.core.errors import FclinkError
from fclink.core.events import DidUpdateRadioState, EventBus
from fclink.core.handshake import HandshakeVerifier
from fclink.core.model import (
    SCANNING,
    ConnectionPhase,
    ConnectionState,
    DiscoveredPeripheral,
    PeripheralRef,
    RadioState,
    WriteMode,
)
from fclink.core.registry import DeviceRegistry
from fclink.core.relay import ByteStreamRelay
from fclink.core.scanner import PeripheralScanner
from fclink.core.scheduler import LoopScheduler, Scheduler
from fclink.core.settings import Settings
from fclink.transports.base import Central, MessageCodec

LOGGER = logging.getLogger(__name__)


class SerialSession:
    """Context object tying the central to the scanner, connection, and handshake.

    The application builds one session per process and hands it to whoever
    needs the link. The session registers itself as the central's delegate;
    every platform callback, timer, and user call must run on the same
    event loop.
    """

    def __init__(
        self,
        central: Central,
        registry: DeviceRegistry,
        settings: Settings | None = None,
        *,
        codec: MessageCodec | None = None,
        bus: EventBus | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.central = central
        self.registry = registry
        self.bus = bus or EventBus()
        scheduler = scheduler or LoopScheduler()

        self.relay = ByteStreamRelay()
        self.connections = ConnectionManager(central, scheduler, self.bus)
        self.scanner = PeripheralScanner(central, self.connections, registry, settings or Settings(), self.bus)
        self.verifier = HandshakeVerifier(self.connections, self.relay, registry, self.bus, scheduler)
        self.connections.on_attempt_end = self._on_attempt_end

        central.delegate = self
        if codec is not None:
            self.attach_codec(codec)

    # state

    @property
    def codec(self) -> MessageCodec | None:
        return self.relay.delegate

    @property
    def settings(self) -> Settings:
        return self.scanner.settings

    @settings.setter
    def settings(self, value: Settings) -> None:
        self.scanner.settings = value

    @property
    def radio_state(self) -> RadioState:
        return self.central.radio_state

    @property
    def state(self) -> ConnectionState:
        state = self.connections.state
        if state.phase is ConnectionPhase.IDLE and self.scanner.is_scanning:
            return SCANNING
        return state

    @property
    def discovered(self) -> tuple[DiscoveredPeripheral, ...]:
        return self.scanner.discovered

    @property
    def is_scanning(self) -> bool:
        return self.scanner.is_scanning

    @property
    def is_connecting(self) -> bool:
        return self.connections.pending is not None

    @property
    def is_connected(self) -> bool:
        return self.connections.connected is not None

    @property
    def is_verified(self) -> bool:
        return self.connections.is_verified

    @property
    def is_ready_to_write(self) -> bool:
        return self.is_connected and self.radio_state is RadioState.POWERED_ON

    @property
    def connected_peripheral(self) -> PeripheralRef | None:
        return self.connections.connected

    @property
    def write_mode(self) -> WriteMode:
        return self.connections.write_mode

    # user operations

    def attach_codec(self, codec: MessageCodec) -> None:
        self.relay.delegate = codec
        self.verifier.codec = codec

    def start_scan(self) -> None:
        self.scanner.start_scan()

    def stop_scan(self) -> None:
        self.scanner.stop_scan()

    def connect(self, peripheral: PeripheralRef) -> bool:
        """Start connecting unless another attempt is already in flight."""
        if self.connections.in_flight:
            LOGGER.warning(
                "Not connecting to %s, already busy with %s",
                peripheral.display_name,
                (self.connections.connected or self.connections.pending).display_name,
            )
            return False
        if self.radio_state is not RadioState.POWERED_ON:
            return False
        self.connections.connect(peripheral)
        return True

    def disconnect(self) -> None:
        self.connections.disconnect()

    def resolve_unresponsive(self, connect_anyway: bool) -> None:
        self.verifier.resolve(connect_anyway)

    def write_bytes(self, data: bytes) -> None:
        if not self.is_ready_to_write:
            return
        self.connections.write(bytes(data))

    def write_string(self, text: str) -> None:
        self.write_bytes(text.encode("utf-8"))

    def read_signal(self, callback: Callable[[float], None]) -> None:
        peripheral = self.connections.connected
        if peripheral is None:
            return
        self.relay.expect_signal(callback)
        self.central.read_signal_strength(peripheral)

    # central delegate

    def on_radio_state(self, state: RadioState) -> None:
        LOGGER.info("Bluetooth radio is %s", state.value)
        if state is not RadioState.POWERED_ON:
            self.connections.handle_radio_loss(state)
            self.scanner.clear()
        self.bus.emit(DidUpdateRadioState(state))

    def on_discover(self, peripheral: PeripheralRef, signal_strength: float) -> None:
        self.scanner.evaluate(peripheral, signal_strength)

    def on_connect(self, peripheral: PeripheralRef) -> None:
        if not self.connections.mark_connected(peripheral):
            return
        self.verifier.start(peripheral, self.registry.lookup(peripheral.identifier))

    def on_fail_to_connect(self, peripheral: PeripheralRef, error: FclinkError | None) -> None:
        self.connections.handle_failure(peripheral, error)

    def on_disconnect(self, peripheral: PeripheralRef, error: FclinkError | None) -> None:
        self.connections.handle_disconnect(peripheral, error)

    def on_data(self, peripheral: PeripheralRef, data: bytes) -> None:
        if self.connections.connected is None or self.connections.connected != peripheral:
            return
        self.relay.on_receive(data)

    def on_signal_strength(self, peripheral: PeripheralRef, signal_strength: float) -> None:
        if self.connections.connected is None or self.connections.connected != peripheral:
            return
        self.relay.on_signal_strength(signal_strength)

    def _on_attempt_end(self) -> None:
        self.verifier.cancel()
        self.relay.reset()
        if self.codec is not None:
            self.codec.reset()
