"""Tools for resolving, generating and safely writing Bambu Studio filament presets.

Summary: This package reads the system and user filament presets of a Bambu Studio
installation, rolls up their inheritance chains, generates new user presets from
manufacturer data and writes presets back to disk without ever leaving a half
written file behind.

Cautions:
    - Bambu Studio holds presets in memory and writes them back on exit. Close it
    before changing presets, or the change may be lost (the engine refuses to write
    while it is running unless forced).
    - The preset file format is undocumented. Everything here is based on observed
    files and may need updating when Bambu Studio changes.
"""
from .engine import DraftResult, InstalledResult, PresetEngine, PresetSummary
from .errors import (
    BackupNotFoundError,
    HostNotFoundError,
    HostRunningWarning,
    InheritanceCycleError,
    InheritanceDepthError,
    InheritanceError,
    NotFoundError,
    PresetError,
    PresetExistsError,
    PresetIOError,
    PresetNotFoundError,
    PresetParseError,
    ReadOnlyPresetError,
)
from .generator import FilamentSpec, GeneratedPreset, MaterialType
from .model import MetadataRecord, Preset
from .paths import StudioPaths
from .registry import PresetGroup, PresetRegistry
from .settings import EngineSettings, load_settings

__all__ = [
    "BackupNotFoundError",
    "DraftResult",
    "EngineSettings",
    "FilamentSpec",
    "GeneratedPreset",
    "HostNotFoundError",
    "HostRunningWarning",
    "InheritanceCycleError",
    "InheritanceDepthError",
    "InheritanceError",
    "InstalledResult",
    "MaterialType",
    "MetadataRecord",
    "NotFoundError",
    "Preset",
    "PresetEngine",
    "PresetError",
    "PresetExistsError",
    "PresetGroup",
    "PresetIOError",
    "PresetNotFoundError",
    "PresetParseError",
    "PresetRegistry",
    "PresetSummary",
    "ReadOnlyPresetError",
    "StudioPaths",
    "load_settings",
]
