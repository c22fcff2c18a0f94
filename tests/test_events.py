from __future__ import annotations

import asyncio

from fclink.core.events import DidConnect, DidStopScanning, DidUpdateRadioState, EventBus
from fclink.core.model import PeripheralRef, RadioState, WriteMode


def test_listener_filter_and_unsubscribe() -> None:
    bus = EventBus()
    seen: list[object] = []
    unsubscribe = bus.subscribe(seen.append, DidStopScanning)

    bus.emit(DidUpdateRadioState(RadioState.POWERED_ON))
    bus.emit(DidStopScanning())
    unsubscribe()
    bus.emit(DidStopScanning())

    assert seen == [DidStopScanning()]


def test_failing_listener_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[object] = []

    def broken(event: object) -> None:
        raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.emit(DidStopScanning())

    assert seen == [DidStopScanning()]


def test_channel_receives_events_while_open() -> None:
    bus = EventBus()
    event = DidConnect(PeripheralRef("AA:00", "Quad"), WriteMode.WITH_RESPONSE)

    async def consume() -> object:
        with bus.channel() as queue:
            bus.emit(event)
            return await queue.get()

    assert asyncio.run(consume()) == event
    bus.emit(DidStopScanning())
