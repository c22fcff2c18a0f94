"""Core data models shared by the scanner, connection engine, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WriteMode(Enum):
    WITH_RESPONSE = "with_response"
    WITHOUT_RESPONSE = "without_response"

    @classmethod
    def from_flag(cls, with_response: bool) -> WriteMode:
        return cls.WITH_RESPONSE if with_response else cls.WITHOUT_RESPONSE

    @property
    def with_response(self) -> bool:
        return self is WriteMode.WITH_RESPONSE


class RadioState(Enum):
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


class ConnectionPhase(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PENDING = "pending"
    CONNECTED = "connected"
    VERIFIED = "verified"


@dataclass(frozen=True)
class PeripheralRef:
    """Opaque reference to a platform peripheral.

    Equality only considers the identifier; ``handle`` carries whatever
    object the platform backend needs to reach the device again.
    """

    identifier: str
    name: str | None = field(default=None, compare=False)
    handle: Any = field(default=None, compare=False, repr=False)

    @property
    def display_name(self) -> str:
        return self.name or self.identifier


@dataclass(frozen=True)
class DiscoveredPeripheral:
    peripheral: PeripheralRef
    signal_strength: float


@dataclass(frozen=True)
class KnownDevice:
    identity: str
    name: str
    auto_connect: bool = True
    write_with_response: bool = False

    @property
    def write_mode(self) -> WriteMode:
        return WriteMode.from_flag(self.write_with_response)


@dataclass(frozen=True)
class ConnectionState:
    phase: ConnectionPhase
    peripheral: PeripheralRef | None = None
    write_mode: WriteMode | None = None


IDLE = ConnectionState(phase=ConnectionPhase.IDLE)
SCANNING = ConnectionState(phase=ConnectionPhase.SCANNING)
