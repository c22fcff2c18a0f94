"""Connection verification: write mode discovery and CLI-mode detection.

Once the serial characteristic is subscribed, the verifier walks a fixed
probe sequence, one step per ``HANDSHAKE_STEP_S``:

Unknown device::

    QUERY_WITHOUT_RESPONSE -> QUERY_WITH_RESPONSE
        -> PROBE_WITHOUT_RESPONSE -> PROBE_WITH_RESPONSE -> AWAITING_DECISION

Known device (write mode taken from the registry)::

    KNOWN_QUERY -> KNOWN_PROBE -> AWAITING_DECISION

Query steps send MSP_API_VERSION and succeed on its reply. Probe steps
write a garbage CLI line; any reply means the controller sits in CLI mode,
so ``exit`` is sent and the version query is retried.

A version reply moves to VERIFYING, which sends the identity follow-up and
announces the link (VERIFIED) when it completes or ``FOLLOW_UP_TIMEOUT_S``
expires.

Every timer and callback carries the step and attempt generation it was
created for and does nothing once either has moved on.
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import partial

from fclink.core.connection import ConnectionManager
from fclink.core.constants import (
    API_MAX_VERSION,
    API_MIN_VERSION,
    CLI_EXIT,
    CLI_PROBE,
    FOLLOW_UP_TIMEOUT_S,
    HANDSHAKE_STEP_S,
    IDENTITY_REQUESTS,
    MSP_API_VERSION,
    STATUS_REQUESTS,
    UNIDENTIFIED_DEVICE_NAME,
)
from fclink.core.errors import HandshakeExhaustedError, IncompatibleProtocolVersionError, RegistryError
from fclink.core.events import DidConnect, DidExhaustHandshake, DidRejectFirmware, DidShowMessage, EventBus
from fclink.core.model import KnownDevice, PeripheralRef, WriteMode
from fclink.core.registry import DeviceRegistry
from fclink.core.relay import ByteStreamRelay
from fclink.core.scheduler import Scheduler, TimerHandle
from fclink.transports.base import MessageCodec

LOGGER = logging.getLogger(__name__)


class HandshakeStep(Enum):
    IDLE = "idle"
    QUERY_WITHOUT_RESPONSE = "query_without_response"
    QUERY_WITH_RESPONSE = "query_with_response"
    PROBE_WITHOUT_RESPONSE = "probe_without_response"
    PROBE_WITH_RESPONSE = "probe_with_response"
    KNOWN_QUERY = "known_query"
    KNOWN_PROBE = "known_probe"
    AWAITING_DECISION = "awaiting_decision"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


_NEXT_STEP = {
    HandshakeStep.QUERY_WITHOUT_RESPONSE: HandshakeStep.QUERY_WITH_RESPONSE,
    HandshakeStep.QUERY_WITH_RESPONSE: HandshakeStep.PROBE_WITHOUT_RESPONSE,
    HandshakeStep.PROBE_WITHOUT_RESPONSE: HandshakeStep.PROBE_WITH_RESPONSE,
    HandshakeStep.PROBE_WITH_RESPONSE: HandshakeStep.AWAITING_DECISION,
    HandshakeStep.KNOWN_QUERY: HandshakeStep.KNOWN_PROBE,
    HandshakeStep.KNOWN_PROBE: HandshakeStep.AWAITING_DECISION,
}

# A version reply is still welcome while the user is being asked.
_ACCEPTS_REPLY = frozenset(_NEXT_STEP) | {HandshakeStep.AWAITING_DECISION}


def is_supported_version(version: tuple[int, int] | None) -> bool:
    return version is not None and API_MIN_VERSION <= version < API_MAX_VERSION


class HandshakeVerifier:
    def __init__(
        self,
        connections: ConnectionManager,
        relay: ByteStreamRelay,
        registry: DeviceRegistry,
        bus: EventBus,
        scheduler: Scheduler,
    ) -> None:
        self._connections = connections
        self._relay = relay
        self._registry = registry
        self._bus = bus
        self._scheduler = scheduler
        self.codec: MessageCodec | None = None
        self._step = HandshakeStep.IDLE
        self._generation = 0
        self._peripheral: PeripheralRef | None = None
        self._known_mode: WriteMode | None = None
        self._timer: TimerHandle | None = None

    @property
    def step(self) -> HandshakeStep:
        return self._step

    def start(self, peripheral: PeripheralRef, known: KnownDevice | None) -> None:
        self.cancel()
        self._peripheral = peripheral
        if known is not None:
            LOGGER.info("Verifying known device %s", peripheral.display_name)
            self._known_mode = known.write_mode
            self._enter(HandshakeStep.KNOWN_QUERY)
        else:
            LOGGER.info("Verifying new device %s", peripheral.display_name)
            self._known_mode = None
            self._enter(HandshakeStep.QUERY_WITHOUT_RESPONSE)

    def resolve(self, connect_anyway: bool) -> None:
        """Answer the exhausted-handshake question for the current attempt."""
        if self._step is not HandshakeStep.AWAITING_DECISION:
            LOGGER.debug("No unresponsive device awaiting a decision")
            return
        if connect_anyway:
            LOGGER.info("Connecting to unresponsive module anyway")
            self._succeed(forced=True)
            return
        self._step = HandshakeStep.FAILED
        self._connections.abort(HandshakeExhaustedError("Module not responding"))

    def cancel(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._step = HandshakeStep.IDLE
        self._peripheral = None

    def _enter(self, step: HandshakeStep) -> None:
        self._step = step
        LOGGER.debug("Handshake step %s", step.value)

        if step is HandshakeStep.QUERY_WITHOUT_RESPONSE:
            self._connections.write_mode = WriteMode.WITHOUT_RESPONSE
            self._query_version()
        elif step is HandshakeStep.QUERY_WITH_RESPONSE:
            self._connections.write_mode = WriteMode.WITH_RESPONSE
            self._query_version()
        elif step is HandshakeStep.PROBE_WITHOUT_RESPONSE:
            if self.codec is not None:
                self.codec.clear_callbacks()
            self._connections.write_mode = WriteMode.WITHOUT_RESPONSE
            self._probe_cli()
        elif step is HandshakeStep.PROBE_WITH_RESPONSE:
            self._connections.write_mode = WriteMode.WITH_RESPONSE
            self._probe_cli()
        elif step is HandshakeStep.KNOWN_QUERY:
            self._connections.write_mode = self._known_mode or WriteMode.WITH_RESPONSE
            self._query_version()
        elif step is HandshakeStep.KNOWN_PROBE:
            self._probe_cli()
        elif step is HandshakeStep.AWAITING_DECISION:
            self._relay.disarm()
            if self._peripheral is not None:
                LOGGER.warning("Module %s not responding", self._peripheral.display_name)
                self._bus.emit(DidExhaustHandshake(self._peripheral))
            return

        # The step's own action may already have verified the device.
        if self._step is step:
            self._timer = self._scheduler.call_later(
                HANDSHAKE_STEP_S,
                partial(self._advance, step, self._generation),
            )

    def _advance(self, step: HandshakeStep, generation: int) -> None:
        if generation != self._generation or self._step is not step:
            return
        self._timer = None
        self._enter(_NEXT_STEP[step])

    def _query_version(self) -> None:
        if self.codec is None:
            LOGGER.warning("No codec attached, cannot query MSP_API_VERSION")
            return
        self.codec.send_request([MSP_API_VERSION], partial(self._on_version_reply, self._generation))

    def _probe_cli(self) -> None:
        self._relay.arm(partial(self._on_cli_reply, self._generation))
        self._connections.write(CLI_PROBE.encode("utf-8"))

    def _on_cli_reply(self, generation: int) -> None:
        if generation != self._generation or self._step not in _ACCEPTS_REPLY:
            return
        LOGGER.info("Module answered the CLI probe, leaving CLI mode")
        self._connections.write(CLI_EXIT.encode("utf-8"))
        self._query_version()

    def _on_version_reply(self, generation: int) -> None:
        if generation != self._generation or self._step not in _ACCEPTS_REPLY:
            return
        self._succeed(forced=False)

    def _succeed(self, *, forced: bool) -> None:
        peripheral = self._peripheral
        if peripheral is None:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._relay.disarm()

        version = self.codec.api_version if self.codec is not None else None
        if not (forced and version is None) and not is_supported_version(version):
            error = IncompatibleProtocolVersionError(version, API_MIN_VERSION, API_MAX_VERSION)
            LOGGER.warning("Firmware of %s not compatible: %s", peripheral.display_name, error)
            self._step = HandshakeStep.FAILED
            self._bus.emit(DidRejectFirmware(peripheral, error))
            self._connections.abort(error)
            return

        # Not verified until DidConnect is emitted in _announce.
        self._step = HandshakeStep.VERIFYING
        self._remember(peripheral, self._connections.write_mode)

        if self.codec is None:
            self._announce(self._generation)
            return
        generation = self._generation
        self._timer = self._scheduler.call_later(FOLLOW_UP_TIMEOUT_S, partial(self._announce, generation))
        self.codec.send_request(IDENTITY_REQUESTS, partial(self._announce, generation))

    def _remember(self, peripheral: PeripheralRef, write_mode: WriteMode) -> None:
        if self._registry.lookup(peripheral.identifier) is not None:
            return
        self._registry.append(
            KnownDevice(
                identity=peripheral.identifier,
                name=peripheral.name or UNIDENTIFIED_DEVICE_NAME,
                auto_connect=True,
                write_with_response=write_mode.with_response,
            )
        )
        try:
            self._registry.persist()
        except RegistryError as exc:
            LOGGER.warning("Could not save known device %s: %s", peripheral.identifier, exc)

    def _announce(self, generation: int) -> None:
        if generation != self._generation or self._step is not HandshakeStep.VERIFYING:
            return
        peripheral = self._peripheral
        if peripheral is None:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._step = HandshakeStep.VERIFIED
        self._connections.mark_verified(self._connections.write_mode)
        version = self.codec.api_version if self.codec is not None else None
        LOGGER.info(
            "Connected to %s, API v%s, write mode %s",
            peripheral.display_name,
            ".".join(str(part) for part in version) if version else "?",
            self._connections.write_mode.value,
        )
        if self.codec is not None:
            self.codec.send_request(STATUS_REQUESTS)
        self._bus.emit(DidShowMessage("Connected"))
        self._bus.emit(DidConnect(peripheral, self._connections.write_mode))
