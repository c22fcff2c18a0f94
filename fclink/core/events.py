"""Typed events emitted by the serial session and the bus that delivers them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Union

from fclink.core.errors import FclinkError
from fclink.core.model import PeripheralRef, RadioState, WriteMode

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WillAutoConnect:
    peripheral: PeripheralRef


@dataclass(frozen=True)
class DidConnect:
    peripheral: PeripheralRef
    write_mode: WriteMode


@dataclass(frozen=True)
class DidFailToConnect:
    peripheral: PeripheralRef | None
    reason: FclinkError | None = None


@dataclass(frozen=True)
class DidDisconnect:
    peripheral: PeripheralRef
    reason: FclinkError | None = None


@dataclass(frozen=True)
class DidDiscoverNewPeripheral:
    peripheral: PeripheralRef
    signal_strength: float
    auto_connect: bool


@dataclass(frozen=True)
class DidUpdateRadioState:
    state: RadioState


@dataclass(frozen=True)
class DidStopScanning:
    pass


@dataclass(frozen=True)
class DidExhaustHandshake:
    """The device ignored every probe; answer with ``SerialSession.resolve_unresponsive``."""

    peripheral: PeripheralRef


@dataclass(frozen=True)
class DidRejectFirmware:
    peripheral: PeripheralRef
    error: FclinkError


@dataclass(frozen=True)
class DidShowMessage:
    text: str


Event = Union[
    WillAutoConnect,
    DidConnect,
    DidFailToConnect,
    DidDisconnect,
    DidDiscoverNewPeripheral,
    DidUpdateRadioState,
    DidStopScanning,
    DidExhaustHandshake,
    DidRejectFirmware,
    DidShowMessage,
]

Listener = Callable[[Event], None]


class EventBus:
    """Fan-out of session events to listeners and asyncio queues.

    Listeners run synchronously, in subscription order, on the thread that
    emitted the event. A listener that raises is logged and skipped so the
    remaining listeners still see the event.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, tuple[type, ...]]] = []
        self._queues: list[asyncio.Queue[Event]] = []

    def subscribe(self, listener: Listener, *event_types: type) -> Callable[[], None]:
        entry = (listener, event_types)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    @contextmanager
    def channel(self) -> Iterator[asyncio.Queue[Event]]:
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._queues.append(queue)
        try:
            yield queue
        finally:
            self._queues.remove(queue)

    def emit(self, event: Event) -> None:
        LOGGER.debug("Emitting %s", event)
        for listener, event_types in list(self._listeners):
            if event_types and not isinstance(event, event_types):
                continue
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Event listener %r failed on %s", listener, type(event).__name__)
        for queue in list(self._queues):
            queue.put_nowait(event)
