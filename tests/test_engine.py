"""Tests for the engine facade: previews, installs, edits and guards."""

import pytest

from conftest import PRESET_FOLDER, FakeProbe, write_preset_file

from filament_presets.engine import PresetEngine
from filament_presets.errors import (
    BackupNotFoundError,
    HostRunningWarning,
    PresetExistsError,
    PresetNotFoundError,
    ReadOnlyPresetError,
)
from filament_presets.generator import FilamentSpec
from filament_presets.model import load_metadata, load_preset
from filament_presets.paths import StudioPaths
from filament_presets.registry import PresetGroup
from filament_presets.settings import EngineSettings

SPEC = FilamentSpec(brand="Acme", material="PLA", name="Basic", nozzle_temp_max=220)


def folder_snapshot(folder):
    return {
        path.relative_to(folder): path.read_bytes()
        for path in folder.rglob("*")
        if path.is_file()
    }


class TestLookups:
    def test_detect(self, studio_root):
        engine = PresetEngine.detect(EngineSettings(appdata_path=studio_root), probe=FakeProbe())
        assert engine.paths.preset_folder == PRESET_FOLDER
        assert engine.user_dir == studio_root / "user" / PRESET_FOLDER / "filament" / "base"

    def test_list_presets_sorted(self, engine):
        names = [summary.name for summary in engine.list_presets()]
        assert names == sorted(names, key=str.lower)
        assert "Generic PLA" in names

    def test_list_user_only(self, engine, user_dir):
        summaries = engine.list_presets(include_system=False)
        assert [summary.name for summary in summaries] == ["My PLA"]
        assert summaries[0].group == PresetGroup.USER
        assert summaries[0].path == user_dir / "My PLA.json"
        assert summaries[0].filament_id == "P1234567"

    def test_registry_is_rebuilt(self, engine, user_dir):
        assert len(engine.build_registry()) == 5
        (user_dir / "Another.json").write_text('{"name": "Another"}', encoding="utf-8")
        assert len(engine.build_registry()) == 6

    def test_read(self, engine, user_dir):
        assert engine.read_preset(user_dir / "My PLA.json").name == "My PLA"
        assert engine.read_metadata(user_dir / "My PLA.json").updated_time == 1700000000

    def test_read_missing(self, engine, user_dir):
        with pytest.raises(PresetNotFoundError):
            engine.read_preset(user_dir / "Ghost.json")

    def test_resolve(self, engine):
        assert engine.resolve("My PLA").nozzle_temperature == ["210", "225"]
        with pytest.raises(PresetNotFoundError):
            engine.resolve("Ghost")

    def test_resolve_loaded_preset_ignores_shadowing(self, engine, system_dir, user_dir):
        write_preset_file(
            user_dir / "Generic PLA.json",
            {"name": "Generic PLA", "inherits": "", "filament_flow_ratio": ["0.5", "0.5"]},
        )
        system_preset = engine.read_preset(system_dir / "Generic PLA.json")
        resolved = engine.resolve_preset(system_preset)
        assert resolved.get("filament_flow_ratio") == ["0.98", "0.98"]
        assert resolved.nozzle_temperature == ["210", "210"]
        assert engine.resolve("Generic PLA").get("filament_flow_ratio") == ["0.5", "0.5"]

    def test_is_system_path(self, engine, system_dir, user_dir):
        assert engine.is_system_path(system_dir / "Generic PLA.json")
        assert not engine.is_system_path(user_dir / "My PLA.json")


class TestGeneratePreview:
    def test_nothing_written(self, engine, studio_root):
        before = folder_snapshot(studio_root)
        engine.generate_preview(SPEC)
        assert folder_snapshot(studio_root) == before

    def test_draft(self, engine):
        result = engine.generate_preview(SPEC)
        assert result.base_name == "Generic PLA"
        assert result.draft.preset.name == "Acme PLA Basic"
        assert result.field_count == result.draft.preset.field_count
        assert result.preview == result.draft.preset.serialize()
        assert f"user_id = {PRESET_FOLDER}" in result.metadata_text
        assert "nozzle_temperature" in [diff.key for diff in result.diffs]
        assert result.warnings == []
        assert result.host_running is False

    def test_target_printer_from_settings(self, studio_paths, probe):
        settings = EngineSettings(target_printer="Bambu Lab H2D 0.4 nozzle")
        engine = PresetEngine(studio_paths, probe=probe, settings=settings)
        result = engine.generate_preview(SPEC)
        assert result.draft.preset.name == "Acme PLA Basic @Bambu Lab H2D 0.4 nozzle"

    def test_warnings(self, engine, probe):
        probe.running = True
        result = engine.generate_preview(SPEC._replace(nozzle_temp_max=300))
        assert result.host_running is True
        assert len(result.warnings) == 2
        assert "Bambu Studio is running" in result.warnings[-1]


class TestInstall:
    def test_new_preset(self, engine, user_dir):
        draft = engine.generate_preview(SPEC).draft
        result = engine.install(draft)
        assert result.path == user_dir / "Acme PLA Basic.json"
        assert result.backup_path is None
        assert result.host_was_running is False
        assert result.path.read_text(encoding="utf-8") == draft.preset.serialize()
        assert load_metadata(result.path) == draft.metadata
        assert not (user_dir / ".backups").exists()

    def test_installed_preset_is_indexed(self, engine):
        engine.install(engine.generate_preview(SPEC).draft)
        assert "Acme PLA Basic" in engine.build_registry()

    def test_refused_while_running(self, engine, probe, user_dir):
        engine.install(engine.generate_preview(SPEC).draft)
        target = user_dir / "Acme PLA Basic.json"
        before = folder_snapshot(user_dir)

        probe.running = True
        draft = engine.generate_preview(SPEC._replace(nozzle_temp_max=230)).draft
        with pytest.raises(HostRunningWarning):
            engine.install(draft)
        assert folder_snapshot(user_dir) == before
        assert load_preset(target).nozzle_temperature == ["220", "220"]

    def test_forced_replace_backs_up_once(self, engine, probe, user_dir):
        first = engine.install(engine.generate_preview(SPEC).draft)
        original = first.path.read_bytes()

        probe.running = True
        draft = engine.generate_preview(SPEC._replace(nozzle_temp_max=230)).draft
        result = engine.install(draft, force=True)

        assert result.host_was_running is True
        backups = list((user_dir / ".backups").iterdir())
        assert backups == [result.backup_path]
        assert result.backup_path.read_bytes() == original
        assert load_preset(result.path).nozzle_temperature == ["230", "230"]

    def test_no_user_folder(self, studio_root, probe):
        paths = StudioPaths(
            config_root=studio_root,
            system_dir=studio_root / "system" / "BBL" / "filament",
            user_root=studio_root / "no-users",
            preset_folder=None,
        )
        engine = PresetEngine(paths, probe=probe)
        draft = engine.generate_preview(SPEC).draft
        with pytest.raises(PresetNotFoundError):
            engine.install(draft)


class TestEdits:
    @pytest.fixture
    def my_pla(self, user_dir):
        return user_dir / "My PLA.json"

    def test_update_field(self, engine, my_pla):
        preset = engine.update_field(my_pla, "nozzle_temperature", ["230", "230"])
        assert preset.nozzle_temperature == ["230", "230"]
        assert load_preset(my_pla).nozzle_temperature == ["230", "230"]
        assert len(engine.list_backups(my_pla)) == 1
        assert load_metadata(my_pla).updated_time > 1700000000

    def test_update_keeps_other_fields(self, engine, my_pla):
        before = load_preset(my_pla)
        engine.update_field(my_pla, "filament_notes", "dry first")
        after = load_preset(my_pla)
        assert after.field_count == before.field_count + 1
        assert list(after.raw)[: before.field_count] == list(before.raw)

    def test_system_preset_is_read_only(self, engine, system_dir):
        target = system_dir / "Generic PLA.json"
        before = target.read_bytes()
        with pytest.raises(ReadOnlyPresetError):
            engine.update_field(target, "nozzle_temperature", ["1", "1"])
        with pytest.raises(ReadOnlyPresetError):
            engine.save_spec(target, SPEC)
        assert target.read_bytes() == before
        assert not (system_dir / ".backups").exists()

    def test_update_refused_while_running(self, engine, probe, my_pla):
        before = my_pla.read_bytes()
        probe.running = True
        with pytest.raises(HostRunningWarning):
            engine.update_field(my_pla, "nozzle_temperature", ["1", "1"])
        assert my_pla.read_bytes() == before
        engine.update_field(my_pla, "nozzle_temperature", ["1", "1"], force=True)
        assert load_preset(my_pla).nozzle_temperature == ["1", "1"]

    def test_save_spec(self, engine, my_pla):
        engine.save_spec(my_pla, FilamentSpec(nozzle_temp_max=235, bed_temp_max=65))
        preset = load_preset(my_pla)
        assert preset.nozzle_temperature == ["235", "235"]
        assert preset.get("hot_plate_temp") == ["65", "65"]
        assert preset.name == "My PLA"
        assert preset.inherits == "Generic PLA"

    def test_extract_spec(self, engine, my_pla):
        spec = engine.extract_spec(my_pla)
        assert spec.name == "My PLA"
        # Leaf only: first position of ["nil", "225"] isn't a number.
        assert spec.nozzle_temperature is None

    def test_duplicate(self, engine, my_pla, user_dir):
        result = engine.duplicate(my_pla, "My PLA Copy")
        assert result.path == user_dir / "My PLA Copy.json"
        copy = load_preset(result.path)
        assert copy.name == "My PLA Copy"
        assert copy.filament_id != "P1234567"
        assert copy.setting_id != "PFUS0123456789abcd"
        assert copy.filament_settings_id == ["My PLA Copy", "My PLA Copy"]
        assert copy.inherits == "Generic PLA"
        metadata = load_metadata(result.path)
        assert metadata.setting_id == copy.setting_id
        assert metadata.user_id == PRESET_FOLDER

    def test_duplicate_system_preset(self, engine, system_dir):
        result = engine.duplicate(system_dir / "Generic PLA.json", "My Generic")
        copy = load_preset(result.path)
        assert copy.origin == "User"
        assert copy.filament_id.startswith("P")

    def test_duplicate_refuses_existing_name(self, engine, my_pla):
        with pytest.raises(PresetExistsError):
            engine.duplicate(my_pla, "My PLA")


class TestBackupRestore:
    def test_backup_and_restore(self, engine, user_dir):
        my_pla = user_dir / "My PLA.json"
        original = my_pla.read_bytes()
        backup_path = engine.backup(my_pla)
        engine.update_field(my_pla, "nozzle_temperature", ["250", "250"])

        preset = engine.restore(backup_path, my_pla)
        assert my_pla.read_bytes() == original
        assert preset.nozzle_temperature == ["nil", "225"]
        # Manual backup, pre-update backup, pre-restore backup.
        assert len(engine.list_backups(my_pla)) == 3

    def test_restore_missing_backup(self, engine, user_dir):
        with pytest.raises(BackupNotFoundError):
            engine.restore(user_dir / ".backups" / "nope.json", user_dir / "My PLA.json")

    def test_restore_refused_while_running(self, engine, probe, user_dir):
        my_pla = user_dir / "My PLA.json"
        backup_path = engine.backup(my_pla)
        probe.running = True
        with pytest.raises(HostRunningWarning):
            engine.restore(backup_path, my_pla)
        assert len(engine.list_backups(my_pla)) == 1


class TestCompare:
    def test_compare_files(self, engine, system_dir, user_dir):
        result = engine.compare(system_dir / "Generic PLA.json", user_dir / "My PLA.json")
        assert result.name_a == "Generic PLA"
        assert result.name_b == "My PLA"
        assert result.changed_fields > 0

    def test_matrix_resolved(self, engine, system_dir, user_dir):
        matrix = engine.comparison_matrix(
            [system_dir / "Generic PLA.json", user_dir / "My PLA.json"], resolved=True
        )
        ref = next(cell for cell in matrix.table_cells() if cell.row == 0 and cell.column == 1)
        assert ref.value == "system"
        # Resolved, both have the same hot plate temp so it isn't listed.
        row_names = {cell.value for cell in matrix.table_cells() if cell.column == 0}
        assert "hot_plate_temp" not in row_names
        assert "nozzle_temperature" not in row_names
