"""Inbound byte delivery to the codec and one-shot observers."""

from __future__ import annotations

from collections.abc import Callable

from fclink.transports.base import MessageCodec


class ByteStreamRelay:
    def __init__(self, delegate: MessageCodec | None = None) -> None:
        self.delegate = delegate
        self._next_receive: Callable[[], None] | None = None
        self._signal_callback: Callable[[float], None] | None = None

    @property
    def armed(self) -> bool:
        return self._next_receive is not None

    def arm(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once, before the codec sees the next payload."""
        self._next_receive = callback

    def disarm(self) -> None:
        self._next_receive = None

    def reset(self) -> None:
        self._next_receive = None
        self._signal_callback = None

    def on_receive(self, data: bytes) -> None:
        callback, self._next_receive = self._next_receive, None
        if callback is not None:
            callback()
        if self.delegate is not None:
            self.delegate.receive(data)

    def expect_signal(self, callback: Callable[[float], None]) -> None:
        self._signal_callback = callback

    def on_signal_strength(self, signal_strength: float) -> None:
        callback, self._signal_callback = self._signal_callback, None
        if callback is not None:
            callback(signal_strength)
