from __future__ import annotations

from fclink.core.relay import ByteStreamRelay
from tests.fakes import FakeCodec, Harness, peripheral


def test_one_shot_runs_before_codec_and_only_once() -> None:
    codec = FakeCodec()
    relay = ByteStreamRelay(codec)
    order: list[str] = []
    relay.arm(lambda: order.append(f"hook after {len(codec.received)}"))

    relay.on_receive(b"first")
    relay.on_receive(b"second")

    assert order == ["hook after 0"]
    assert codec.received == [b"first", b"second"]


def test_receive_without_delegate_is_dropped() -> None:
    relay = ByteStreamRelay()
    relay.on_receive(b"nobody listens")
    assert not relay.armed


def test_data_from_other_peripheral_is_ignored() -> None:
    h = Harness()
    h.link_up(peripheral("MINE"))

    h.session.on_data(peripheral("OTHER"), b"\x00")
    h.session.on_data(peripheral("MINE"), b"\x01")

    assert h.codec.received == [b"\x01"]


def test_read_signal_requires_connection() -> None:
    h = Harness()
    samples: list[float] = []

    h.session.read_signal(samples.append)
    assert h.central.calls == []

    h.link_up(peripheral())
    h.session.read_signal(samples.append)
    h.session.on_signal_strength(peripheral(), -58.0)
    h.session.on_signal_strength(peripheral(), -61.0)

    assert ("signal", peripheral().identifier) in h.central.calls
    assert samples == [-58.0]
