"""Interfaces between the serial session, the BLE platform, and the MSP codec."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol

from fclink.core.errors import FclinkError
from fclink.core.model import PeripheralRef, RadioState


class CentralDelegate(Protocol):
    """Callbacks a central delivers, all on the session's event loop."""

    def on_radio_state(self, state: RadioState) -> None: ...

    def on_discover(self, peripheral: PeripheralRef, signal_strength: float) -> None: ...

    def on_connect(self, peripheral: PeripheralRef) -> None:
        """The link is up and the serial characteristic is subscribed."""

    def on_fail_to_connect(self, peripheral: PeripheralRef, error: FclinkError | None) -> None: ...

    def on_disconnect(self, peripheral: PeripheralRef, error: FclinkError | None) -> None: ...

    def on_data(self, peripheral: PeripheralRef, data: bytes) -> None: ...

    def on_signal_strength(self, peripheral: PeripheralRef, signal_strength: float) -> None: ...


class Central(Protocol):
    """Platform BLE central role.

    Every method returns immediately; outcomes arrive through ``delegate``.
    """

    delegate: CentralDelegate | None

    @property
    def radio_state(self) -> RadioState: ...

    def start_scan(self, service_uuid: str, *, allow_duplicates: bool) -> None: ...

    def stop_scan(self) -> None: ...

    def retrieve_connected(self, service_uuid: str) -> Sequence[PeripheralRef]: ...

    def connect(self, peripheral: PeripheralRef) -> None: ...

    def cancel_connection(self, peripheral: PeripheralRef) -> None: ...

    def write(self, peripheral: PeripheralRef, data: bytes, *, with_response: bool) -> None: ...

    def read_signal_strength(self, peripheral: PeripheralRef) -> None: ...


class MessageCodec(Protocol):
    """Upper-layer MSP codec fed by the session's byte stream."""

    @property
    def api_version(self) -> tuple[int, int] | None:
        """MSP API version reported by the last MSP_API_VERSION reply."""

    def send_request(
        self,
        codes: Sequence[int],
        completion: Callable[[], None] | None = None,
    ) -> None: ...

    def receive(self, data: bytes) -> None: ...

    def clear_callbacks(self) -> None: ...

    def reset(self) -> None: ...


CodecFactory = Callable[[Callable[[bytes], None]], MessageCodec]
