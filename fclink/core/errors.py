"""Domain-specific errors for fclink."""

from __future__ import annotations


class FclinkError(Exception):
    """Base error for fclink."""


class TransportError(FclinkError):
    """Base transport error."""


class ConnectTimeoutError(TransportError):
    """Raised when a connection attempt is still pending after the timeout."""


class ConnectRejectedError(TransportError):
    """Raised when the peer refuses the link or lacks the serial characteristic."""


class RadioUnavailableError(TransportError):
    """Raised when an operation needs the radio powered on."""


class HandshakeError(FclinkError):
    """Base error for connection verification failures."""


class HandshakeExhaustedError(HandshakeError):
    """Raised when the device did not answer any of the probes."""


class IncompatibleProtocolVersionError(HandshakeError):
    """Raised when the firmware reports an MSP API version outside the supported window."""

    def __init__(
        self,
        version: tuple[int, int] | None,
        minimum: tuple[int, int],
        maximum: tuple[int, int],
    ) -> None:
        self.version = version
        self.minimum = minimum
        self.maximum = maximum
        shown = _format_version(version) if version is not None else "<unknown>"
        super().__init__(
            f"MSP API version {shown} is not supported "
            f"(need >= {_format_version(minimum)} and < {_format_version(maximum)})"
        )


class RegistryError(FclinkError):
    """Base error for the known-device registry."""


class RegistryLoadError(RegistryError):
    """Raised when the registry file cannot be read or written."""


class RegistryValidationError(RegistryError):
    """Raised when the registry file does not conform to schema or semantics."""


class SettingsError(FclinkError):
    """Raised when the settings file is unreadable or invalid."""


class CodecLoadError(FclinkError):
    """Raised when a codec factory cannot be imported."""


def _format_version(version: tuple[int, int]) -> str:
    return ".".join(str(part) for part in version)
