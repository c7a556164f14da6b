"""Tests for atomic writes, backups and restores."""

import os
from datetime import datetime, timezone

import pytest

from conftest import MY_PLA, preset_text

from filament_presets import writer
from filament_presets.errors import (
    BackupNotFoundError,
    PresetIOError,
    PresetNotFoundError,
    PresetParseError,
)
from filament_presets.model import MetadataRecord, Preset, load_metadata

NOON = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def preset():
    return Preset.parse(preset_text(MY_PLA))


def leftovers(folder):
    return [path.name for path in folder.iterdir() if path.name.startswith(writer.TEMP_PREFIX)]


def refuse(*args):
    raise OSError("no")


class TestAtomicWrite:
    def test_written_bytes_equal_serialized(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        writer.write_preset(preset, target)
        assert target.read_text(encoding="utf-8") == preset.serialize()
        assert leftovers(tmp_path) == []

    def test_creates_missing_folders(self, tmp_path, preset):
        target = tmp_path / "a" / "b" / "My PLA.json"
        writer.write_preset(preset, target)
        assert target.is_file()

    def test_overwrite(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        target.write_text("old", encoding="utf-8")
        writer.write_preset(preset, target)
        assert target.read_text(encoding="utf-8") == preset.serialize()

    def test_failed_rename_leaves_target_untouched(self, tmp_path, preset, monkeypatch):
        target = tmp_path / "My PLA.json"
        target.write_text("original content", encoding="utf-8")

        def fail_replace(src, dst):
            raise OSError("disk on fire")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(PresetIOError, match="disk on fire"):
            writer.write_preset(preset, target)

        assert target.read_text(encoding="utf-8") == "original content"
        assert leftovers(tmp_path) == []

    def test_failed_flush_leaves_target_untouched(self, tmp_path, preset, monkeypatch):
        target = tmp_path / "My PLA.json"
        target.write_text("original content", encoding="utf-8")

        def fail_fsync(fd):
            raise OSError("device gone")

        monkeypatch.setattr(os, "fsync", fail_fsync)
        with pytest.raises(PresetIOError):
            writer.write_preset(preset, target)

        assert target.read_text(encoding="utf-8") == "original content"
        assert leftovers(tmp_path) == []

    def test_failed_write_of_new_file_creates_nothing(self, tmp_path, preset, monkeypatch):
        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(PresetIOError):
            writer.write_preset(preset, tmp_path / "New.json")
        assert list(tmp_path.iterdir()) == []

    def test_io_error_is_os_error(self, tmp_path, preset, monkeypatch):
        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(OSError):
            writer.write_preset(preset, tmp_path / "New.json")


class TestMetadataWrites:
    def test_write_with_metadata(self, tmp_path, preset):
        record = MetadataRecord(user_id="1", setting_id="PFUSabc", updated_time=5)
        target = tmp_path / "My PLA.json"
        writer.write_with_metadata(preset, target, record)
        assert target.read_text(encoding="utf-8") == preset.serialize()
        assert (tmp_path / "My PLA.info").read_text(encoding="utf-8") == record.to_text()

    def test_touch_metadata(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        writer.write_with_metadata(preset, target, MetadataRecord(setting_id="x", updated_time=5))
        record = writer.touch_metadata(target, now=99)
        assert record.updated_time == 99
        assert record.setting_id == "x"
        assert load_metadata(target).updated_time == 99

    def test_touch_without_companion(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        writer.write_preset(preset, target)
        assert writer.touch_metadata(target) is None
        assert not (tmp_path / "My PLA.info").exists()


class TestBackup:
    @pytest.fixture
    def target(self, tmp_path, preset):
        path = tmp_path / "My PLA.json"
        writer.write_preset(preset, path)
        return path

    def test_backup_name_and_content(self, target):
        backup_path = writer.backup(target, now=NOON)
        assert backup_path == target.parent / ".backups" / "My PLA_20260101_120000.json"
        assert backup_path.read_bytes() == target.read_bytes()

    def test_same_second_does_not_overwrite(self, target):
        first = writer.backup(target, now=NOON)
        second = writer.backup(target, now=NOON)
        assert first != second
        assert second.name == "My PLA_20260101_120000_2.json"
        assert first.is_file() and second.is_file()

    def test_missing_source(self, tmp_path):
        with pytest.raises(PresetNotFoundError):
            writer.backup(tmp_path / "Ghost.json")

    def test_list_backups_oldest_first(self, target, tmp_path):
        later = writer.backup(target, now=datetime(2026, 2, 1, tzinfo=timezone.utc))
        earlier = writer.backup(target, now=NOON)
        assert writer.list_backups(target) == [earlier, later]

    def test_list_backups_ignores_similar_names(self, target, tmp_path, preset):
        for stem in ("My PLA Pro", "My PLA_2"):
            other = tmp_path / f"{stem}.json"
            writer.write_preset(preset, other)
            writer.backup(other, now=NOON)
        mine = writer.backup(target, now=NOON)
        assert writer.list_backups(target) == [mine]
        assert writer.list_backups(tmp_path / "My PLA_2.json") == [
            tmp_path / ".backups" / "My PLA_2_20260101_120000.json"
        ]

    def test_list_backups_counter_order(self, target):
        backups = [writer.backup(target, now=NOON) for _ in range(11)]
        assert backups[-1].name == "My PLA_20260101_120000_11.json"
        assert writer.list_backups(target) == backups

    def test_list_backups_none(self, target):
        assert writer.list_backups(target) == []


class TestRestore:
    def test_restore_is_byte_identical(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        writer.write_preset(preset, target)
        original = target.read_bytes()
        backup_path = writer.backup(target, now=NOON)

        changed = preset.copy()
        changed.set_array("nozzle_temperature", ["250", "250"])
        writer.write_preset(changed, target)

        restored = writer.restore(backup_path, target)
        assert target.read_bytes() == original
        assert restored.nozzle_temperature == ["nil", "225"]

    def test_missing_backup(self, tmp_path):
        with pytest.raises(BackupNotFoundError):
            writer.restore(tmp_path / "nope.json", tmp_path / "My PLA.json")

    def test_corrupt_backup_does_not_replace_target(self, tmp_path, preset):
        target = tmp_path / "My PLA.json"
        writer.write_preset(preset, target)
        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{ broken", encoding="utf-8")
        with pytest.raises(PresetParseError):
            writer.restore(corrupt, target)
        assert target.read_text(encoding="utf-8") == preset.serialize()
