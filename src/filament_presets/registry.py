"""Name indexed collection of the filament presets found on disk.

The registry is rebuilt on demand (presets come and go behind our back whenever
Bambu Studio runs), so nothing here is cached between engine calls.
"""
import logging
from enum import StrEnum
from pathlib import Path
from typing import Iterator, NamedTuple, Self

from .errors import PresetError
from .model import PRESET_EXT, Preset, load_preset

logger = logging.getLogger(__name__)


class PresetGroup(StrEnum):
    """Preset ownership.

    System refers to presets shipped with Bambu Studio (never modified by us).
    User refers to presets in the user folder, which the engine may create/overwrite.
    """

    SYSTEM = "system"
    USER = "user"


class RegistryEntry(NamedTuple):
    """A preset and where it came from."""

    name: str
    path: Path | None
    group: PresetGroup
    preset: Preset


def _preset_files(root: Path) -> Iterator[Path]:
    """Yield preset files under root in a stable order, skipping hidden entries.

    Hidden folders include .backups, which hold copies of presets that must not
    shadow the real thing. Hidden files include the .tmp_ files an interrupted
    write leaves behind.
    """
    for path in sorted(root.rglob("*" + PRESET_EXT)):
        relative = path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            yield path


class PresetRegistry:
    """Filament presets keyed by display name.

    Name collisions are resolved last wins. System presets are indexed before user
    presets, so a user preset shadows a system preset with the same name.
    """

    _entries: dict[str, RegistryEntry]

    def __init__(self) -> None:
        """Create an empty registry."""
        self._entries = {}

    @classmethod
    def build(cls, system_dir: Path | None, user_dir: Path | None) -> Self:
        """Walk system_dir then user_dir and index every parseable preset.

        Files that can't be read or parsed are logged and skipped - one broken preset
        shouldn't take the rest down with it. Either folder may be None or missing.
        """
        registry = cls()
        registry._walk(system_dir, PresetGroup.SYSTEM)
        registry._walk(user_dir, PresetGroup.USER)
        logger.info(
            "Indexed %d presets (%d system, %d user)",
            len(registry),
            sum(1 for e in registry.entries() if e.group == PresetGroup.SYSTEM),
            sum(1 for e in registry.entries() if e.group == PresetGroup.USER),
        )
        return registry

    def _walk(self, root: Path | None, group: PresetGroup) -> None:
        if root is None:
            return
        if not root.is_dir():
            logger.warning("%s preset folder does not exist: %s", group, root)
            return

        for path in _preset_files(root):
            try:
                preset = load_preset(path)
            except PresetError as err:
                logger.warning("Skipping unreadable preset %s: %s", path, err)
                continue

            name = preset.name
            if not name:
                # Vendor index files (BBL.json and friends) have no name.
                logger.debug("Skipping %s: no preset name", path)
                continue

            self.add(RegistryEntry(name=name, path=path, group=group, preset=preset))

    def add(self, entry: RegistryEntry) -> None:
        """Add entry. Replaces (with a warning) any entry of the same name."""
        existing = self._entries.get(entry.name)
        if existing is not None and existing.path != entry.path:
            logger.warning(
                "Duplicate definition for '%s': %s replaces %s",
                entry.name,
                entry.path,
                existing.path,
            )
        self._entries[entry.name] = entry

    def get_by_name(self, name: str) -> Preset | None:
        """Return the named preset, None if it isn't indexed."""
        entry = self._entries.get(name)
        return entry.preset if entry else None

    def entry(self, name: str) -> RegistryEntry | None:
        return self._entries.get(name)

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def names(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries
