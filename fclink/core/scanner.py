"""Peripheral discovery, ranking, and the auto-connect policy."""

from __future__ import annotations

import logging

from fclink.core.connection import ConnectionManager
from fclink.core.constants import AUTO_CONNECT_SIGNAL_THRESHOLD, MISSING_SIGNAL_FLOOR, SERVICE_UUID
from fclink.core.events import DidDiscoverNewPeripheral, DidStopScanning, EventBus, WillAutoConnect
from fclink.core.model import DiscoveredPeripheral, PeripheralRef, RadioState
from fclink.core.registry import DeviceRegistry
from fclink.core.settings import Settings
from fclink.transports.base import Central

LOGGER = logging.getLogger(__name__)


class PeripheralScanner:
    def __init__(
        self,
        central: Central,
        connections: ConnectionManager,
        registry: DeviceRegistry,
        settings: Settings,
        bus: EventBus,
    ) -> None:
        self._central = central
        self._connections = connections
        self._registry = registry
        self.settings = settings
        self._bus = bus
        self._discovered: list[DiscoveredPeripheral] = []
        self._scanning = False

    @property
    def discovered(self) -> tuple[DiscoveredPeripheral, ...]:
        """Discovered peripherals, weakest signal first."""
        return tuple(self._discovered)

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def start_scan(self) -> None:
        if self._central.radio_state is not RadioState.POWERED_ON:
            return
        LOGGER.info("Start scanning")

        self._discovered = []
        self._scanning = True
        # Repeated advertisements are only useful for the proximity rule.
        self._central.start_scan(SERVICE_UUID, allow_duplicates=self.settings.auto_connect_new)

        for peripheral in self._central.retrieve_connected(SERVICE_UUID):
            self.evaluate(peripheral, None)

    def stop_scan(self) -> None:
        if self._central.radio_state is not RadioState.POWERED_ON:
            return
        LOGGER.info("Stopped scanning")

        self._scanning = False
        self._central.stop_scan()
        self._bus.emit(DidStopScanning())

    def clear(self) -> None:
        self._discovered = []
        self._scanning = False

    def evaluate(self, peripheral: PeripheralRef, signal_strength: float | None) -> None:
        LOGGER.debug("Signal %s from %s", signal_strength, peripheral.display_name)

        # Order matters: the proximity rule must see duplicate advertisements,
        # the known-device rule must only see the first one.
        known = self._registry.lookup(peripheral.identifier) is not None
        auto_connect = False

        if (
            self.settings.auto_connect_new
            and signal_strength is not None
            and signal_strength > AUTO_CONNECT_SIGNAL_THRESHOLD
            and not known
        ):
            auto_connect = self._auto_connect(peripheral)

        if any(entry.peripheral.identifier == peripheral.identifier for entry in self._discovered):
            return

        if self.settings.auto_connect_known and known:
            auto_connect = self._auto_connect(peripheral) or auto_connect

        strength = MISSING_SIGNAL_FLOOR if signal_strength is None else float(signal_strength)
        self._discovered.append(DiscoveredPeripheral(peripheral=peripheral, signal_strength=strength))
        self._discovered.sort(key=lambda entry: entry.signal_strength)

        self._bus.emit(DidDiscoverNewPeripheral(peripheral, strength, auto_connect))

    def _auto_connect(self, peripheral: PeripheralRef) -> bool:
        if self._connections.in_flight:
            LOGGER.debug("Skipping auto-connect to %s, a connection is in flight", peripheral.identifier)
            return False
        self.stop_scan()
        self._connections.connect(peripheral)
        self._bus.emit(WillAutoConnect(peripheral))
        return True
