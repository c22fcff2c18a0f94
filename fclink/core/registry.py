"""Persisted registry of flight controllers that passed verification."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from fclink.core.documents import data_dir, load_schema_validator, read_yaml, validate, write_yaml
from fclink.core.errors import RegistryLoadError, RegistryValidationError
from fclink.core.model import KnownDevice

LOGGER = logging.getLogger(__name__)


def default_registry_path() -> Path:
    return data_dir() / "devices.yaml"


def _normalize_identity(identity: str) -> str:
    return identity.strip().upper()


class DeviceRegistry:
    """Ordered list of known devices, unique by identity.

    Identities are compared case-insensitively. Changes stay in memory
    until ``persist`` is called.
    """

    def __init__(self, devices: Iterable[KnownDevice] = (), *, path: Path | None = None) -> None:
        self.path = path
        self._devices: list[KnownDevice] = []
        for device in devices:
            self.append(device)

    @classmethod
    def load(cls, path: Path | None = None) -> DeviceRegistry:
        path = path or default_registry_path()
        if not path.exists():
            LOGGER.debug("No registry at %s, starting empty", path)
            return cls(path=path)

        doc = read_yaml(path, load_error=RegistryLoadError, validation_error=RegistryValidationError)
        validate(doc, load_schema_validator("registry.schema.json"), path, error=RegistryValidationError)

        devices = [_device_from_doc(entry) for entry in doc.get("devices", [])]
        seen: set[str] = set()
        for device in devices:
            if device.identity in seen:
                raise RegistryValidationError(f"Duplicate device identity '{device.identity}' in {path}")
            seen.add(device.identity)
        return cls(devices, path=path)

    @property
    def devices(self) -> tuple[KnownDevice, ...]:
        return tuple(self._devices)

    def __iter__(self) -> Iterator[KnownDevice]:
        return iter(tuple(self._devices))

    def __len__(self) -> int:
        return len(self._devices)

    def lookup(self, identity: str) -> KnownDevice | None:
        wanted = _normalize_identity(identity)
        for device in self._devices:
            if device.identity == wanted:
                return device
        return None

    def append(self, device: KnownDevice) -> None:
        normalized = KnownDevice(
            identity=_normalize_identity(device.identity),
            name=device.name,
            auto_connect=device.auto_connect,
            write_with_response=device.write_with_response,
        )
        if self.lookup(normalized.identity) is not None:
            raise RegistryValidationError(f"Device '{normalized.identity}' is already registered")
        self._devices.append(normalized)

    def remove(self, identity: str) -> bool:
        device = self.lookup(identity)
        if device is None:
            return False
        self._devices.remove(device)
        return True

    def persist(self) -> None:
        if self.path is None:
            return
        doc = {"devices": [_device_to_doc(device) for device in self._devices]}
        try:
            write_yaml(self.path, doc)
        except OSError as exc:
            raise RegistryLoadError(f"Could not write registry {self.path}: {exc}") from exc
        LOGGER.info("Saved %d known device(s) to %s", len(self._devices), self.path)


def _device_from_doc(entry: dict[str, Any]) -> KnownDevice:
    return KnownDevice(
        identity=_normalize_identity(entry["identity"]),
        name=entry["name"],
        auto_connect=entry.get("auto_connect", True),
        write_with_response=entry.get("write_with_response", False),
    )


def _device_to_doc(device: KnownDevice) -> dict[str, Any]:
    return {
        "identity": device.identity,
        "name": device.name,
        "auto_connect": device.auto_connect,
        "write_with_response": device.write_with_response,
    }
