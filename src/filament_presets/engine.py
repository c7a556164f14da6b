"""Preset engine: the operations a front end (CLI, GUI) drives.

Summary: PresetEngine ties the pieces together for one Bambu Studio installation.
It holds the resolved paths, a host process probe and the settings, and nothing
else. The registry is rebuilt from disk for every operation that needs one, because
Bambu Studio may have changed the preset folders in the meantime.

The typical generate flow is:
    draft = engine.generate_preview(spec)       # nothing written
    ... show draft.preview / draft.diffs / draft.warnings ...
    result = engine.install(draft.draft)        # backup (if replacing), write json + .info

Every operation that writes a preset:
    - refuses system presets (ReadOnlyPresetError),
    - raises HostRunningWarning if Bambu Studio is running, unless force is set,
    - backs up the existing file first, and
    - refreshes the .info updated_time so Bambu Studio picks up the change.
Presets are never deleted.
"""
import logging
import time
from functools import partial
from pathlib import Path
from typing import Callable, NamedTuple, Self, TypeAlias

from . import generator, inheritance, paths, writer
from .diff import (
    CompareResult,
    DiffMatrix,
    FieldDiff,
    PresetColumn,
    compare_presets,
    comparison_matrix,
    draft_diffs,
)
from .errors import (
    BackupNotFoundError,
    HostRunningWarning,
    PresetExistsError,
    PresetNotFoundError,
    ReadOnlyPresetError,
)
from .generator import FilamentSpec, GeneratedPreset
from .model import (
    FILAMENT_SETTINGS_ID,
    FROM_USER,
    MetadataRecord,
    Preset,
    SettingValue,
    load_metadata,
    load_preset,
)
from .paths import StudioPaths
from .process import is_host_running
from .registry import PresetGroup, PresetRegistry
from .settings import EngineSettings

logger = logging.getLogger(__name__)

HostProbe: TypeAlias = Callable[[], bool]


class PresetSummary(NamedTuple):
    """One line of a preset listing."""

    name: str
    path: Path | None
    group: PresetGroup
    filament_type: str | None
    filament_id: str | None


class DraftResult(NamedTuple):
    """A generated preset, ready for review. Nothing has been written."""

    draft: GeneratedPreset
    base_name: str
    field_count: int
    # Preset json exactly as it would be written.
    preview: str
    metadata_text: str
    diffs: list[FieldDiff]
    warnings: list[str]
    host_running: bool


class InstalledResult(NamedTuple):
    path: Path
    name: str
    # Copy of the file that was replaced, None for a new preset.
    backup_path: Path | None
    host_was_running: bool


class PresetEngine:
    """Read, generate and write filament presets for one Bambu Studio install."""

    paths: StudioPaths
    settings: EngineSettings
    _probe: HostProbe

    def __init__(
        self,
        studio_paths: StudioPaths,
        probe: HostProbe | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """Create engine for studio_paths.

        probe reports whether Bambu Studio is running. Defaults to a process table
        scan for the names in settings.
        """
        self.paths = studio_paths
        self.settings = settings or EngineSettings()
        self._probe = probe or partial(is_host_running, self.settings.host_process_names)

    @classmethod
    def detect(cls, settings: EngineSettings | None = None, probe: HostProbe | None = None) -> Self:
        """Create engine for the Bambu Studio installation on this machine."""
        settings = settings or EngineSettings()
        studio_paths = paths.detect(settings.appdata_path, settings.preset_folder)
        logger.info("Using Bambu Studio config at %s", studio_paths.config_root)
        return cls(studio_paths, probe=probe, settings=settings)

    # --- Lookups ---

    @property
    def user_dir(self) -> Path | None:
        """Active user filament folder (may appear or vanish while we run)."""
        return paths.user_filament_dir(self.paths)

    def _require_user_dir(self) -> Path:
        user_dir = self.user_dir
        if user_dir is None:
            raise PresetNotFoundError(
                str(self.paths.user_root / (self.paths.preset_folder or "<id>") / "filament" / "base")
            )
        return user_dir

    def build_registry(self) -> PresetRegistry:
        """Index system and user presets as they are on disk right now."""
        return PresetRegistry.build(self.paths.system_dir, self.user_dir)

    def is_system_path(self, path: Path) -> bool:
        system_root = (self.paths.config_root / "system").resolve()
        return path.resolve().is_relative_to(system_root)

    def list_presets(self, include_system: bool = True) -> list[PresetSummary]:
        """Summaries of the indexed presets, sorted by name (case insensitive)."""
        summaries = [
            PresetSummary(
                name=entry.name,
                path=entry.path,
                group=entry.group,
                filament_type=entry.preset.filament_type,
                filament_id=entry.preset.filament_id,
            )
            for entry in self.build_registry().entries()
            if include_system or entry.group == PresetGroup.USER
        ]
        return sorted(summaries, key=lambda summary: summary.name.lower())

    def read_preset(self, path: Path) -> Preset:
        return load_preset(path)

    def read_metadata(self, path: Path) -> MetadataRecord | None:
        """The .info companion of the preset at path, None if it has none."""
        return load_metadata(path)

    def resolve(self, name: str) -> Preset:
        """Fully flattened settings for the named preset."""
        registry = self.build_registry()
        preset = registry.get_by_name(name)
        if preset is None:
            raise PresetNotFoundError(name)
        return inheritance.resolve(preset, registry, self.settings.max_inheritance_depth)

    def resolve_preset(self, preset: Preset, registry: PresetRegistry | None = None) -> Preset:
        """Fully flattened settings for an already loaded preset.

        The preset itself is the leaf, even if the registry holds a different preset
        of the same name (a user preset shadowing a system one).
        """
        if registry is None:
            registry = self.build_registry()
        return inheritance.resolve(preset, registry, self.settings.max_inheritance_depth)

    # --- Write guards ---

    def _check_writable(self, path: Path) -> None:
        if self.is_system_path(path):
            raise ReadOnlyPresetError(path)

    def _check_host(self, force: bool, action: str) -> bool:
        """Raise HostRunningWarning if Bambu Studio is running and force isn't set.

        Returns the probe result so callers can report it.
        """
        running = self._probe()
        if running:
            if not force:
                raise HostRunningWarning(action)
            logger.warning("Bambu Studio is running, continuing to %s (forced)", action)
        return running

    def _backup_if_exists(self, path: Path) -> Path | None:
        return writer.backup(path) if path.exists() else None

    # --- Generate and install ---

    def generate_preview(
        self,
        spec: FilamentSpec,
        base_name: str | None = None,
        target_printer: str | None = None,
    ) -> DraftResult:
        """Generate a preset from spec without writing anything."""
        registry = self.build_registry()
        draft = generator.generate(
            spec,
            base_name,
            registry,
            target_printer=target_printer or self.settings.target_printer,
            user_id=self.paths.preset_folder or "",
            max_depth=self.settings.max_inheritance_depth,
        )

        warnings = [warning.message for warning in generator.validate_spec(spec)]
        host_running = self._probe()
        if host_running:
            warnings.append(str(HostRunningWarning("install the preset")))

        return DraftResult(
            draft=draft,
            base_name=draft.base_name,
            field_count=draft.preset.field_count,
            preview=draft.preset.serialize(),
            metadata_text=draft.metadata.to_text(),
            diffs=draft_diffs(draft.base, draft.preset),
            warnings=warnings,
            host_running=host_running,
        )

    def install(self, draft: GeneratedPreset, force: bool = False) -> InstalledResult:
        """Write a generated preset and its .info into the user folder.

        An existing preset of the same file name is backed up, then replaced.
        """
        user_dir = self._require_user_dir()
        running = self._check_host(force, "install the preset")
        target = user_dir / draft.filename

        backup_path = self._backup_if_exists(target)
        writer.write_with_metadata(draft.preset, target, draft.metadata)
        logger.info("Installed '%s' to %s", draft.preset.name, target)
        return InstalledResult(
            path=target,
            name=draft.preset.name or "",
            backup_path=backup_path,
            host_was_running=running,
        )

    # --- Backups ---

    def backup(self, path: Path) -> Path:
        return writer.backup(path)

    def list_backups(self, path: Path) -> list[Path]:
        return writer.list_backups(path)

    def restore(self, backup_path: Path, path: Path, force: bool = False) -> Preset:
        """Replace the preset at path with a backup copy.

        The current file (if any) is backed up first, so a restore can itself be
        undone.
        """
        self._check_writable(path)
        if not backup_path.is_file():
            raise BackupNotFoundError(backup_path)
        self._check_host(force, "restore the preset")

        self._backup_if_exists(path)
        preset = writer.restore(backup_path, path)
        writer.touch_metadata(path)
        return preset

    # --- Edits ---

    def _rewrite(self, preset: Preset, path: Path) -> None:
        self._backup_if_exists(path)
        writer.write_preset(preset, path)
        writer.touch_metadata(path)

    def update_field(
        self, path: Path, key: str, value: SettingValue, force: bool = False
    ) -> Preset:
        """Set one raw field of a user preset."""
        self._check_writable(path)
        preset = load_preset(path)
        self._check_host(force, "update the preset")

        preset.raw[key] = value
        self._rewrite(preset, path)
        logger.info("Updated '%s' in %s", key, path)
        return preset

    def save_spec(self, path: Path, spec: FilamentSpec, force: bool = False) -> Preset:
        """Apply spec values to an existing user preset (see generator.apply_spec)."""
        self._check_writable(path)
        preset = load_preset(path)
        self._check_host(force, "update the preset")

        generator.apply_spec(preset, spec)
        if spec.name:
            preset.name = spec.name
        self._rewrite(preset, path)
        logger.info("Saved spec values to %s", path)
        return preset

    def extract_spec(self, path: Path) -> FilamentSpec:
        return generator.extract_spec(load_preset(path))

    def duplicate(self, path: Path, new_name: str, force: bool = False) -> InstalledResult:
        """Copy a preset into the user folder under a new name and fresh ids."""
        source = load_preset(path)
        user_dir = self._require_user_dir()
        target = user_dir / generator.preset_filename(new_name)
        if target.exists():
            raise PresetExistsError(target)
        running = self._check_host(force, "create the preset")

        preset = source.copy()
        setting_id = generator.generate_setting_id()
        preset.name = new_name
        preset.origin = FROM_USER
        preset.filament_id = generator.generate_filament_id()
        if preset.setting_id is not None:
            preset.setting_id = setting_id
        preset.set_uniform(FILAMENT_SETTINGS_ID, new_name)

        metadata = MetadataRecord(
            user_id=self.paths.preset_folder or "",
            setting_id=setting_id,
            updated_time=int(time.time()),
        )
        writer.write_with_metadata(preset, target, metadata)
        logger.info("Duplicated %s to %s as '%s'", path, target, new_name)
        return InstalledResult(
            path=target, name=new_name, backup_path=None, host_was_running=running
        )

    # --- Comparison ---

    def compare(self, path_a: Path, path_b: Path, show_identical: bool = False) -> CompareResult:
        return compare_presets(load_preset(path_a), load_preset(path_b), show_identical)

    def comparison_matrix(
        self, preset_paths: list[Path], resolved: bool = False, show_identical: bool = False
    ) -> DiffMatrix:
        """Matrix of presets for Excel export. The first path is the reference.

        With resolved set, each preset is flattened through its inherits chain first,
        so the comparison is of effective settings rather than file content.
        """
        registry = self.build_registry() if resolved else None
        columns: list[tuple[PresetColumn, Preset]] = []
        for path in preset_paths:
            preset = load_preset(path)
            if registry is not None:
                preset = self.resolve_preset(preset, registry)
            group = PresetGroup.SYSTEM if self.is_system_path(path) else PresetGroup.USER
            columns.append(
                (PresetColumn(group.value, path.name, preset.name or path.stem), preset)
            )
        return comparison_matrix(columns, show_identical)
