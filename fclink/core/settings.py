"""User settings consulted by the scanner's auto-connect policy."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fclink.core.documents import config_dir, load_schema_validator, read_yaml, validate
from fclink.core.errors import SettingsError


@dataclass(frozen=True)
class Settings:
    auto_connect_new: bool = True
    auto_connect_known: bool = True


def default_settings_path() -> Path:
    return config_dir() / "settings.yaml"


def load_settings(path: Path | None = None) -> Settings:
    path = path or default_settings_path()
    if not path.exists():
        return Settings()

    doc = read_yaml(path, load_error=SettingsError, validation_error=SettingsError)
    validate(doc, load_schema_validator("settings.schema.json"), path, error=SettingsError)
    defaults = Settings()
    return Settings(
        auto_connect_new=doc.get("auto_connect_new", defaults.auto_connect_new),
        auto_connect_known=doc.get("auto_connect_known", defaults.auto_connect_known),
    )
