"""Lifecycle of the single in-flight connection attempt."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fclink.core.constants import CONNECT_TIMEOUT_S
from fclink.core.errors import ConnectRejectedError, ConnectTimeoutError, FclinkError, RadioUnavailableError
from fclink.core.events import DidDisconnect, DidFailToConnect, EventBus
from fclink.core.model import IDLE, ConnectionPhase, ConnectionState, PeripheralRef, RadioState, WriteMode
from fclink.core.scheduler import Scheduler, TimerHandle
from fclink.transports.base import Central

LOGGER = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the pending/connected peripheral slot.

    ``on_attempt_end`` runs whenever the slot is cleared, whatever the
    reason, so per-attempt state elsewhere (handshake timers, one-shot
    receive handlers) is dropped together with it.
    """

    def __init__(self, central: Central, scheduler: Scheduler, bus: EventBus) -> None:
        self._central = central
        self._scheduler = scheduler
        self._bus = bus
        self._pending: PeripheralRef | None = None
        self._connected: PeripheralRef | None = None
        self._verified = False
        self._timeout: TimerHandle | None = None
        self.write_mode = WriteMode.WITH_RESPONSE
        self.on_attempt_end: Callable[[], None] | None = None

    @property
    def pending(self) -> PeripheralRef | None:
        return self._pending

    @property
    def connected(self) -> PeripheralRef | None:
        return self._connected

    @property
    def in_flight(self) -> bool:
        return self._pending is not None or self._connected is not None

    @property
    def is_verified(self) -> bool:
        return self._connected is not None and self._verified

    @property
    def state(self) -> ConnectionState:
        if self._pending is not None:
            return ConnectionState(ConnectionPhase.PENDING, self._pending)
        if self._connected is not None and self._verified:
            return ConnectionState(ConnectionPhase.VERIFIED, self._connected, self.write_mode)
        if self._connected is not None:
            return ConnectionState(ConnectionPhase.CONNECTED, self._connected)
        return IDLE

    def connect(self, peripheral: PeripheralRef) -> None:
        if self._central.radio_state is not RadioState.POWERED_ON:
            LOGGER.debug("Ignoring connect to %s, radio is %s", peripheral.identifier, self._central.radio_state.value)
            return
        LOGGER.info("Connecting to peripheral %s", peripheral.display_name)

        # A newer request supersedes the old one; its timer is cancelled and
        # would no-op anyway because it checks for its own peripheral.
        self._cancel_timeout()
        self._pending = peripheral
        self._central.connect(peripheral)
        self._timeout = self._scheduler.call_later(
            CONNECT_TIMEOUT_S,
            lambda: self._on_timeout(peripheral),
        )

    def disconnect(self) -> None:
        if self._central.radio_state is not RadioState.POWERED_ON:
            return
        target = self._connected or self._pending
        if target is None:
            return
        LOGGER.info("Disconnecting from %s", target.display_name)
        self._central.cancel_connection(target)

    def write(self, data: bytes) -> None:
        if self._connected is None:
            return
        self._central.write(self._connected, data, with_response=self.write_mode.with_response)

    def mark_connected(self, peripheral: PeripheralRef) -> bool:
        """Promote the pending peripheral once its serial link is up."""
        if self._pending is None or self._pending != peripheral:
            LOGGER.warning("Link to %s came up but it is no longer pending, dropping it", peripheral.identifier)
            self._central.cancel_connection(peripheral)
            return False
        self._cancel_timeout()
        self._pending = None
        self._connected = peripheral
        self._verified = False
        return True

    def mark_verified(self, write_mode: WriteMode) -> None:
        if self._connected is None:
            return
        self.write_mode = write_mode
        self._verified = True

    def abort(self, reason: FclinkError) -> None:
        """Give up on the current attempt and report it as failed."""
        target = self._connected or self._pending
        if target is None:
            return
        LOGGER.info("Aborting connection to %s: %s", target.display_name, reason)
        if self._central.radio_state is RadioState.POWERED_ON:
            self._central.cancel_connection(target)
        self._end_attempt()
        self._bus.emit(DidFailToConnect(target, reason))

    def handle_failure(self, peripheral: PeripheralRef, error: FclinkError | None) -> None:
        if self._pending is None or self._pending != peripheral:
            LOGGER.debug("Ignoring connect failure for stale peripheral %s", peripheral.identifier)
            return
        LOGGER.info("Failed to connect to %s: %s", peripheral.display_name, error)
        self._end_attempt()
        self._bus.emit(DidFailToConnect(peripheral, error or ConnectRejectedError("Peer refused the connection")))

    def handle_disconnect(self, peripheral: PeripheralRef, error: FclinkError | None) -> bool:
        target = self._connected or self._pending
        if target is None or target != peripheral:
            LOGGER.debug("Ignoring disconnect for stale peripheral %s", peripheral.identifier)
            return False
        was_verified = self.is_verified
        LOGGER.info("Disconnected from %s", peripheral.display_name)
        self._end_attempt()
        if was_verified:
            self._bus.emit(DidDisconnect(peripheral, error))
        else:
            self._bus.emit(DidFailToConnect(peripheral, error or ConnectRejectedError("Link dropped before verification")))
        return True

    def handle_radio_loss(self, state: RadioState) -> None:
        target = self._connected or self._pending
        if target is None:
            return
        was_verified = self.is_verified
        self._end_attempt()
        reason = RadioUnavailableError(f"Bluetooth radio is {state.value}")
        if was_verified:
            self._bus.emit(DidDisconnect(target, reason))
        else:
            self._bus.emit(DidFailToConnect(target, reason))

    def _on_timeout(self, peripheral: PeripheralRef) -> None:
        if self._pending is None or self._pending != peripheral:
            return
        LOGGER.warning("Connection timeout for %s", peripheral.display_name)
        self._timeout = None
        self.abort(ConnectTimeoutError(f"No connection to {peripheral.display_name} after {CONNECT_TIMEOUT_S:g}s"))

    def _cancel_timeout(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _end_attempt(self) -> None:
        self._cancel_timeout()
        self._pending = None
        self._connected = None
        self._verified = False
        if self.on_attempt_end is not None:
            self.on_attempt_end()
