from __future__ import annotations

from pathlib import Path

from fclink.core.constants import FOLLOW_UP_TIMEOUT_S, HANDSHAKE_STEP_S, IDENTITY_REQUESTS, STATUS_REQUESTS
from fclink.core.errors import HandshakeExhaustedError, IncompatibleProtocolVersionError
from fclink.core.events import (
    DidConnect,
    DidDisconnect,
    DidExhaustHandshake,
    DidFailToConnect,
    DidRejectFirmware,
    DidShowMessage,
)
from fclink.core.handshake import HandshakeStep, is_supported_version
from fclink.core.model import ConnectionPhase, KnownDevice, WriteMode
from fclink.core.registry import DeviceRegistry
from tests.fakes import FakeCodec, Harness, peripheral

PROBE = (b"asdf\r", False)
PROBE_WITH_RESPONSE = (b"asdf\r", True)


def test_new_device_answering_first_query() -> None:
    h = Harness()
    target = peripheral()

    h.link_up(target)
    assert h.session.write_mode is WriteMode.WITHOUT_RESPONSE
    h.codec.reply_version()

    assert h.session.state.phase is ConnectionPhase.VERIFIED
    assert h.of_type(DidConnect) == [DidConnect(target, WriteMode.WITHOUT_RESPONSE)]
    assert h.of_type(DidShowMessage) == [DidShowMessage("Connected")]
    assert h.codec.requests[1:] == [IDENTITY_REQUESTS, STATUS_REQUESTS]
    device = h.registry.lookup(target.identifier)
    assert device == KnownDevice(identity=target.identifier, name="HMSoft", auto_connect=True, write_with_response=False)


def test_new_device_answering_with_response_query() -> None:
    h = Harness()
    h.link_up(peripheral())

    h.scheduler.advance(HANDSHAKE_STEP_S)
    assert h.session.verifier.step is HandshakeStep.QUERY_WITH_RESPONSE
    assert h.session.write_mode is WriteMode.WITH_RESPONSE
    h.codec.reply_version()

    assert h.of_type(DidConnect)[0].write_mode is WriteMode.WITH_RESPONSE
    assert h.registry.lookup(peripheral().identifier).write_with_response is True
    assert h.central.writes == []


def test_new_device_in_cli_mode_is_brought_back_to_msp() -> None:
    h = Harness()
    h.link_up(peripheral())
    h.scheduler.advance(2 * HANDSHAKE_STEP_S)

    assert h.session.verifier.step is HandshakeStep.PROBE_WITHOUT_RESPONSE
    assert h.codec.cleared == 1
    assert h.central.writes == [PROBE]
    assert h.session.relay.armed

    h.session.on_data(peripheral(), b"asdf\r\nUnknown command\r\n# ")

    assert h.central.writes == [PROBE, (b"exit\r", False)]
    assert h.codec.received == [b"asdf\r\nUnknown command\r\n# "]
    assert not h.session.relay.armed
    assert h.codec.version_queries() == 3

    h.codec.reply_version()
    assert h.of_type(DidConnect)[0].write_mode is WriteMode.WITHOUT_RESPONSE


def test_new_device_exhausts_every_probe() -> None:
    h = Harness()
    target = peripheral()
    h.link_up(target)

    h.scheduler.advance(3 * HANDSHAKE_STEP_S)
    assert h.central.writes == [PROBE, PROBE_WITH_RESPONSE]
    assert h.of_type(DidExhaustHandshake) == []

    h.scheduler.advance(HANDSHAKE_STEP_S)

    assert h.of_type(DidExhaustHandshake) == [DidExhaustHandshake(target)]
    assert h.session.verifier.step is HandshakeStep.AWAITING_DECISION
    assert h.of_type(DidConnect) == []
    assert h.of_type(DidFailToConnect) == []


def test_cancel_after_exhaustion_disconnects() -> None:
    h = Harness()
    target = peripheral()
    h.link_up(target)
    h.scheduler.advance(4 * HANDSHAKE_STEP_S)

    h.session.resolve_unresponsive(connect_anyway=False)

    failures = h.of_type(DidFailToConnect)
    assert len(failures) == 1
    assert isinstance(failures[0].reason, HandshakeExhaustedError)
    assert h.central.cancels() == [target.identifier]
    assert h.session.state.phase is ConnectionPhase.IDLE
    assert len(h.registry) == 0

    h.session.on_disconnect(target, None)
    assert len(h.of_type(DidFailToConnect)) == 1


def test_connect_anyway_after_exhaustion() -> None:
    h = Harness(codec=FakeCodec(api_version=None))
    target = peripheral()
    h.link_up(target)
    h.scheduler.advance(4 * HANDSHAKE_STEP_S)

    h.session.resolve_unresponsive(connect_anyway=True)

    assert h.of_type(DidConnect) == [DidConnect(target, WriteMode.WITH_RESPONSE)]
    assert h.registry.lookup(target.identifier).write_with_response is True


def test_resolve_without_pending_question_is_ignored() -> None:
    h = Harness()
    h.link_up(peripheral())

    h.session.resolve_unresponsive(connect_anyway=False)

    assert h.session.state.phase is ConnectionPhase.CONNECTED
    assert h.of_type(DidFailToConnect) == []


def test_racing_success_callbacks_connect_once() -> None:
    h = Harness()
    target = peripheral()
    h.link_up(target)
    h.scheduler.advance(HANDSHAKE_STEP_S)
    assert len(h.codec.pending) == 2

    h.codec.reply_version()
    h.scheduler.advance(10 * HANDSHAKE_STEP_S)

    assert len(h.of_type(DidConnect)) == 1
    assert len(h.registry) == 1
    assert h.of_type(DidExhaustHandshake) == []


def test_version_below_minimum_is_rejected() -> None:
    h = Harness(codec=FakeCodec(api_version=(1, 6)))
    target = peripheral()
    h.link_up(target)

    h.codec.reply_version()

    rejected = h.of_type(DidRejectFirmware)
    assert len(rejected) == 1
    assert isinstance(rejected[0].error, IncompatibleProtocolVersionError)
    assert rejected[0].error.version == (1, 6)
    assert isinstance(h.of_type(DidFailToConnect)[0].reason, IncompatibleProtocolVersionError)
    assert h.central.cancels() == [target.identifier]
    assert h.of_type(DidConnect) == []
    assert len(h.registry) == 0
    assert h.session.state.phase is ConnectionPhase.IDLE


def test_supported_version_window() -> None:
    assert is_supported_version((1, 7))
    assert is_supported_version((1, 99))
    assert not is_supported_version((2, 0))
    assert not is_supported_version((1, 6))
    assert not is_supported_version(None)


def test_known_device_uses_remembered_write_mode() -> None:
    known = KnownDevice(identity="AA:BB:CC:00:00:01", name="Quad", write_with_response=False)
    h = Harness(known=[known])
    target = peripheral()
    h.link_up(target)

    assert h.session.verifier.step is HandshakeStep.KNOWN_QUERY
    assert h.session.write_mode is WriteMode.WITHOUT_RESPONSE
    assert h.codec.version_queries() == 1

    h.scheduler.advance(HANDSHAKE_STEP_S)
    assert h.central.writes == [PROBE]

    h.scheduler.advance(HANDSHAKE_STEP_S)
    assert h.central.writes == [PROBE]
    assert h.of_type(DidExhaustHandshake) == [DidExhaustHandshake(target)]
    assert h.codec.version_queries() == 1


def test_known_device_success_does_not_duplicate_registry_entry() -> None:
    known = KnownDevice(identity="AA:BB:CC:00:00:01", name="Quad", write_with_response=True)
    h = Harness(known=[known])
    h.link_up(peripheral())

    h.codec.reply_version()

    assert h.registry.devices == (known,)
    assert h.of_type(DidConnect)[0].write_mode is WriteMode.WITH_RESPONSE


def test_disconnect_cancels_pending_handshake_steps() -> None:
    h = Harness()
    target = peripheral()
    h.link_up(target)
    h.scheduler.advance(2 * HANDSHAKE_STEP_S)

    h.session.on_disconnect(target, None)
    h.scheduler.advance(10 * HANDSHAKE_STEP_S)
    h.codec.reply_version()

    assert not h.session.relay.armed
    assert h.central.writes == [PROBE]
    assert h.of_type(DidExhaustHandshake) == []
    assert h.of_type(DidConnect) == []
    assert len(h.of_type(DidFailToConnect)) == 1


def test_probe_handler_from_old_attempt_does_not_fire_later() -> None:
    h = Harness()
    first = peripheral("FIRST")
    h.link_up(first)
    h.scheduler.advance(2 * HANDSHAKE_STEP_S)
    h.session.on_disconnect(first, None)

    second = peripheral("SECOND")
    h.link_up(second)
    h.central.writes.clear()
    h.session.on_data(second, b"\x24\x4d\x3e")

    assert (b"exit\r", False) not in h.central.writes
    assert h.session.verifier.step is HandshakeStep.QUERY_WITHOUT_RESPONSE


def test_verified_device_is_persisted(tmp_path: Path) -> None:
    path = tmp_path / "devices.yaml"
    h = Harness(registry=DeviceRegistry(path=path))
    h.link_up(peripheral(name=None))

    h.codec.reply_version()

    reloaded = DeviceRegistry.load(path)
    assert reloaded.lookup("aa:bb:cc:00:00:01").name == "Unidentified"


def test_new_device_leaves_cli_mode_with_response() -> None:
    h = Harness()
    h.link_up(peripheral())
    h.scheduler.advance(3 * HANDSHAKE_STEP_S)
    assert h.session.verifier.step is HandshakeStep.PROBE_WITH_RESPONSE

    h.session.on_data(peripheral(), b"# ")

    assert h.central.writes == [PROBE, PROBE_WITH_RESPONSE, (b"exit\r", True)]
    assert h.codec.version_queries() == 3
    h.codec.reply_version()
    assert h.of_type(DidConnect)[0].write_mode is WriteMode.WITH_RESPONSE


def test_known_device_leaves_cli_mode() -> None:
    known = KnownDevice(identity="AA:BB:CC:00:00:01", name="Quad", write_with_response=True)
    h = Harness(known=[known])
    h.link_up(peripheral())
    h.scheduler.advance(HANDSHAKE_STEP_S)
    assert h.session.verifier.step is HandshakeStep.KNOWN_PROBE

    h.session.on_data(peripheral(), b"Entering CLI Mode\r\n# ")

    assert h.central.writes == [PROBE_WITH_RESPONSE, (b"exit\r", True)]
    assert h.codec.version_queries() == 2
    h.codec.reply_version()
    assert h.of_type(DidConnect) == [DidConnect(peripheral(), WriteMode.WITH_RESPONSE)]
    assert h.of_type(DidExhaustHandshake) == []


def test_link_lost_during_identity_follow_up_is_a_failed_attempt() -> None:
    h = Harness(codec=FakeCodec(hold_follow_ups=True))
    target = peripheral()
    h.link_up(target)
    h.codec.reply_version()
    assert h.session.verifier.step is HandshakeStep.VERIFYING
    assert not h.session.is_verified

    h.session.on_disconnect(target, None)
    for completion in h.codec.held:
        completion()
    h.scheduler.advance(FOLLOW_UP_TIMEOUT_S)

    assert len(h.of_type(DidFailToConnect)) == 1
    assert h.of_type(DidDisconnect) == []
    assert h.of_type(DidConnect) == []
    assert h.session.state.phase is ConnectionPhase.IDLE


def test_unanswered_identity_follow_up_still_announces() -> None:
    h = Harness(codec=FakeCodec(hold_follow_ups=True))
    target = peripheral()
    h.link_up(target)
    h.codec.reply_version()

    h.scheduler.advance(FOLLOW_UP_TIMEOUT_S)

    assert h.of_type(DidConnect) == [DidConnect(target, WriteMode.WITHOUT_RESPONSE)]
    assert h.session.is_verified
    for completion in h.codec.held:
        completion()
    assert len(h.of_type(DidConnect)) == 1
