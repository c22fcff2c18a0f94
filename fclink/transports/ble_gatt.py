"""BLE GATT central implementation on top of bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from functools import partial
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from fclink.core.constants import CHARACTERISTIC_UUID, SERVICE_UUID
from fclink.core.errors import ConnectRejectedError, FclinkError, TransportError
from fclink.core.model import PeripheralRef, RadioState
from fclink.transports.base import CentralDelegate

LOGGER = logging.getLogger(__name__)

_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
_DEFAULT_CHUNK_SIZE = 20


def expand_uuid(short: str) -> str:
    """Expand a 16-bit UUID string to the 128-bit form bleak reports."""
    short = short.strip().lower()
    if len(short) == 4:
        return f"0000{short}{_BASE_UUID_SUFFIX}"
    return short


def peripheral_from_device(device: BLEDevice) -> PeripheralRef:
    return PeripheralRef(identifier=device.address.upper(), name=device.name, handle=device)


class BleakCentral:
    """Central role driven by bleak on the running asyncio loop.

    Call ``open`` once from inside the loop before using the session, and
    ``close`` when done. Long writes without response are split into
    chunks the characteristic accepts.
    """

    def __init__(self, *, adapter: str | None = None, connect_timeout_s: float = 10.0) -> None:
        self.delegate: CentralDelegate | None = None
        self._adapter = adapter
        self._connect_timeout_s = connect_timeout_s
        self._radio_state = RadioState.UNKNOWN
        self._scanner: BleakScanner | None = None
        self._allow_duplicates = False
        self._seen: set[str] = set()
        self._last_signal: dict[str, float] = {}
        self._clients: dict[str, BleakClient] = {}
        self._characteristics: dict[str, BleakGATTCharacteristic] = {}
        self._links: dict[str, PeripheralRef] = {}
        self._connect_tasks: dict[str, asyncio.Task[None]] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def radio_state(self) -> RadioState:
        return self._radio_state

    async def open(self) -> RadioState:
        """Probe the adapter and report the radio state to the delegate."""
        try:
            scanner = BleakScanner(**self._scanner_kwargs())
            await scanner.start()
            await scanner.stop()
        except (BleakError, OSError) as exc:
            LOGGER.warning("Bluetooth adapter unavailable: %s", exc)
            self._set_radio_state(RadioState.POWERED_OFF)
        else:
            self._set_radio_state(RadioState.POWERED_ON)
        return self._radio_state

    async def close(self) -> None:
        if self._scanner is not None:
            scanner, self._scanner = self._scanner, None
            try:
                await scanner.stop()
            except BleakError as exc:
                LOGGER.debug("Stopping scanner failed: %s", exc)
        for task in list(self._connect_tasks.values()):
            task.cancel()
        for client in list(self._clients.values()):
            try:
                await client.disconnect()
            except BleakError as exc:
                LOGGER.debug("Disconnect during close failed: %s", exc)
        self._clients.clear()
        self._characteristics.clear()
        self._links.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def start_scan(self, service_uuid: str, *, allow_duplicates: bool) -> None:
        if self._scanner is not None:
            self.stop_scan()
        self._allow_duplicates = allow_duplicates
        self._seen = set()
        self._last_signal = {key: value for key, value in self._last_signal.items() if key in self._links}
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=[expand_uuid(service_uuid)],
            **self._scanner_kwargs(),
        )
        self._scanner = scanner
        self._spawn(self._start_scanner(scanner))

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner))

    def retrieve_connected(self, service_uuid: str) -> Sequence[PeripheralRef]:
        # bleak cannot list links owned by other processes; report our own.
        return [
            self._links[identifier]
            for identifier, client in self._clients.items()
            if client.is_connected and identifier in self._links
        ]

    def connect(self, peripheral: PeripheralRef) -> None:
        previous = self._connect_tasks.pop(peripheral.identifier, None)
        if previous is not None:
            previous.cancel()
        task = self._spawn(self._connect(peripheral))
        self._connect_tasks[peripheral.identifier] = task

    def cancel_connection(self, peripheral: PeripheralRef) -> None:
        task = self._connect_tasks.pop(peripheral.identifier, None)
        if task is not None:
            task.cancel()
        client = self._clients.pop(peripheral.identifier, None)
        self._characteristics.pop(peripheral.identifier, None)
        self._links.pop(peripheral.identifier, None)
        self._write_locks.pop(peripheral.identifier, None)
        if client is not None:
            self._spawn(self._disconnect(peripheral, client))

    def write(self, peripheral: PeripheralRef, data: bytes, *, with_response: bool) -> None:
        client = self._clients.get(peripheral.identifier)
        characteristic = self._characteristics.get(peripheral.identifier)
        if client is None or characteristic is None or not data:
            return
        lock = self._write_locks.setdefault(peripheral.identifier, asyncio.Lock())
        self._spawn(self._write(client, characteristic, lock, bytes(data), with_response))

    def read_signal_strength(self, peripheral: PeripheralRef) -> None:
        # bleak exposes no RSSI for an open link; reuse the last advertisement.
        signal = self._last_signal.get(peripheral.identifier)
        if signal is None or self.delegate is None:
            return
        asyncio.get_running_loop().call_soon(self.delegate.on_signal_strength, peripheral, signal)

    def _scanner_kwargs(self) -> dict[str, Any]:
        return {"adapter": self._adapter} if self._adapter else {}

    def _set_radio_state(self, state: RadioState) -> None:
        changed = state is not self._radio_state
        self._radio_state = state
        if changed and self.delegate is not None:
            self.delegate.on_radio_state(state)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("BLE task failed", exc_info=exc)

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        peripheral = peripheral_from_device(device)
        self._last_signal[peripheral.identifier] = float(advertisement.rssi)
        if not self._allow_duplicates and peripheral.identifier in self._seen:
            return
        self._seen.add(peripheral.identifier)
        if self.delegate is not None:
            self.delegate.on_discover(peripheral, float(advertisement.rssi))

    async def _start_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            LOGGER.warning("Could not start scanning: %s", exc)
            if self._scanner is scanner:
                self._scanner = None
            self._set_radio_state(RadioState.POWERED_OFF)
        else:
            self._set_radio_state(RadioState.POWERED_ON)

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.stop()
        except BleakError as exc:
            LOGGER.debug("Stopping scanner failed: %s", exc)

    async def _connect(self, peripheral: PeripheralRef) -> None:
        client = BleakClient(
            peripheral.handle or peripheral.identifier,
            disconnected_callback=partial(self._on_disconnected, peripheral),
            timeout=self._connect_timeout_s,
        )
        self._clients[peripheral.identifier] = client
        try:
            await client.connect()
            characteristic = _find_serial_characteristic(client)
            if characteristic is None:
                raise ConnectRejectedError(
                    f"{peripheral.display_name} has no {SERVICE_UUID}/{CHARACTERISTIC_UUID} serial characteristic"
                )
            await client.start_notify(characteristic, partial(self._on_notify, peripheral))
        except asyncio.CancelledError:
            if self._clients.get(peripheral.identifier) is client:
                self._clients.pop(peripheral.identifier)
            await _quiet_disconnect(client)
            raise
        except (BleakError, OSError, asyncio.TimeoutError, TransportError) as exc:
            LOGGER.info("Connecting to %s failed: %s", peripheral.display_name, exc)
            if self._clients.get(peripheral.identifier) is client:
                self._clients.pop(peripheral.identifier)
            self._connect_tasks.pop(peripheral.identifier, None)
            await _quiet_disconnect(client)
            if self.delegate is not None:
                self.delegate.on_fail_to_connect(peripheral, _as_transport_error(exc))
            return

        self._connect_tasks.pop(peripheral.identifier, None)
        self._characteristics[peripheral.identifier] = characteristic
        self._links[peripheral.identifier] = peripheral
        if self.delegate is not None:
            self.delegate.on_connect(peripheral)

    async def _disconnect(self, peripheral: PeripheralRef, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except BleakError as exc:
            LOGGER.warning("Disconnecting from %s failed: %s", peripheral.display_name, exc)
        # Some backends skip the disconnected callback for a requested disconnect.
        if self.delegate is not None:
            self.delegate.on_disconnect(peripheral, None)

    async def _write(
        self,
        client: BleakClient,
        characteristic: BleakGATTCharacteristic,
        lock: asyncio.Lock,
        data: bytes,
        with_response: bool,
    ) -> None:
        size = len(data) if with_response else _chunk_size(characteristic)
        async with lock:
            try:
                for offset in range(0, len(data), size):
                    await client.write_gatt_char(characteristic, data[offset:offset + size], response=with_response)
            except (BleakError, OSError) as exc:
                LOGGER.warning("Write of %d byte(s) failed: %s", len(data), exc)

    def _on_notify(self, peripheral: PeripheralRef, _: BleakGATTCharacteristic, data: bytearray) -> None:
        if self.delegate is not None:
            self.delegate.on_data(peripheral, bytes(data))

    def _on_disconnected(self, peripheral: PeripheralRef, client: BleakClient) -> None:
        if self._clients.get(peripheral.identifier) is not client:
            return
        self._clients.pop(peripheral.identifier)
        self._characteristics.pop(peripheral.identifier, None)
        self._links.pop(peripheral.identifier, None)
        self._write_locks.pop(peripheral.identifier, None)
        if self.delegate is not None:
            self.delegate.on_disconnect(peripheral, None)


def _find_serial_characteristic(client: BleakClient) -> BleakGATTCharacteristic | None:
    service = client.services.get_service(expand_uuid(SERVICE_UUID))
    if service is None:
        return None
    return service.get_characteristic(expand_uuid(CHARACTERISTIC_UUID))


def _chunk_size(characteristic: BleakGATTCharacteristic) -> int:
    size = getattr(characteristic, "max_write_without_response_size", 0)
    return size if isinstance(size, int) and size > 0 else _DEFAULT_CHUNK_SIZE


def _as_transport_error(exc: BaseException) -> FclinkError:
    if isinstance(exc, FclinkError):
        return exc
    return ConnectRejectedError(str(exc) or type(exc).__name__)


async def _quiet_disconnect(client: BleakClient) -> None:
    try:
        await client.disconnect()
    except (BleakError, OSError) as exc:
        LOGGER.debug("Cleanup disconnect failed: %s", exc)
