"""YAML settings files for auto-bone and auto-weight defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from autorig.errors import ParseError
from autorig.models import AutoBoneSettings, AutoWeightSettings, normalize_auto_bone_settings

SETTINGS_KEYS = frozenset({"auto_bones", "auto_weights"})


@dataclass
class Settings:
    auto_bones: AutoBoneSettings = field(default_factory=AutoBoneSettings)
    auto_weights: AutoWeightSettings = field(default_factory=AutoWeightSettings)


def _make_yaml() -> YAML:
    """Create a ruamel.yaml safe loader that errors on duplicate keys."""
    yml = YAML(typ="safe")
    yml.allow_duplicate_keys = False
    return yml


def _read_source_text(source: str | Path) -> str:
    """Read YAML from a path, or treat a string as raw YAML text."""
    if isinstance(source, Path):
        try:
            return source.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"Cannot read settings file: {e}") from e
    return source


def load_settings(source: str | Path | None = None) -> Settings:
    """Parse a settings document. ``None`` or an empty document gives the defaults.

    Out-of-range numbers are clamped rather than rejected; unknown keys at
    any level are a ParseError.
    """
    if source is None:
        return Settings()
    text = _read_source_text(source)
    try:
        data = _make_yaml().load(text)
    except YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}") from e

    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ParseError("Top-level YAML value must be a mapping")
    unknown = set(data) - SETTINGS_KEYS
    if unknown:
        raise ParseError(f"Unknown settings keys: {sorted(unknown)} (expected {sorted(SETTINGS_KEYS)})")

    bones_raw = data.get("auto_bones") or {}
    weights_raw = data.get("auto_weights") or {}
    for key, raw in (("auto_bones", bones_raw), ("auto_weights", weights_raw)):
        if not isinstance(raw, dict):
            raise ParseError(f"{key} must be a mapping")
    try:
        return Settings(
            auto_bones=normalize_auto_bone_settings(dict(bones_raw)),
            auto_weights=AutoWeightSettings.model_validate(dict(weights_raw)),
        )
    except PydanticValidationError as e:
        raise ParseError(f"Settings validation failed:\n{e}") from e
