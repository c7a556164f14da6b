"""Shared fixtures: a small but realistic Bambu Studio config tree in tmp_path."""

import json
from pathlib import Path

import pytest

from filament_presets.engine import PresetEngine
from filament_presets.paths import detect, user_filament_dir
from filament_presets.registry import PresetRegistry

PRESET_FOLDER = "1881310893"

COMMON = {
    "type": "filament",
    "name": "fdm_filament_common",
    "from": "system",
    "instantiation": "false",
    "description": "Common filament settings",
    "filament_type": ["PLA"],
    "nozzle_temperature": ["200", "200"],
    "cool_plate_temp": ["35", "35"],
    "hot_plate_temp": ["60", "60"],
    "filament_flow_ratio": ["1", "1"],
    "fan_max_speed": ["100", "100"],
    "fan_min_speed": ["20", "20"],
    "filament_retraction_length": ["nil", "nil"],
    "filament_density": ["1.24", "1.24"],
    "compatible_printers": [],
}

FDM_PLA = {
    "type": "filament",
    "name": "fdm_filament_pla",
    "inherits": "fdm_filament_common",
    "from": "system",
    "instantiation": "false",
    "nozzle_temperature": ["210", "210"],
    "hot_plate_temp": ["55", "55"],
}

GENERIC_PLA = {
    "type": "filament",
    "name": "Generic PLA",
    "inherits": "fdm_filament_pla",
    "from": "system",
    "setting_id": "GFSL99",
    "filament_id": "GFL99",
    "instantiation": "true",
    "filament_vendor": ["Generic"],
    "filament_flow_ratio": ["0.98", "0.98"],
}

GENERIC_PETG = {
    "type": "filament",
    "name": "Generic PETG",
    "inherits": "fdm_filament_common",
    "from": "system",
    "setting_id": "GFSG99",
    "filament_id": "GFG99",
    "instantiation": "true",
    "filament_type": ["PETG"],
    "filament_vendor": ["Generic"],
    "nozzle_temperature": ["255", "255"],
}

MY_PLA = {
    "name": "My PLA",
    "inherits": "Generic PLA",
    "from": "User",
    "filament_id": "P1234567",
    "setting_id": "PFUS0123456789abcd",
    "instantiation": "true",
    "filament_settings_id": ["My PLA", "My PLA"],
    "nozzle_temperature": ["nil", "225"],
}

MY_PLA_INFO = (
    "sync_info =\n"
    f"user_id = {PRESET_FOLDER}\n"
    "setting_id = PFUS0123456789abcd\n"
    "base_id =\n"
    "updated_time = 1700000000\n"
)


def preset_text(data: dict) -> str:
    return json.dumps(data, indent=4, ensure_ascii=False) + "\n"


def write_preset_file(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(preset_text(data), encoding="utf-8")
    return path


@pytest.fixture
def studio_root(tmp_path):
    root = tmp_path / "BambuStudio"
    root.mkdir()
    conf = {"app": {"preset_folder": PRESET_FOLDER, "language": "en"}}
    (root / "BambuStudio.conf").write_text(
        "# MD5 checksum 0123456789ABCDEF\n" + json.dumps(conf, indent=4) + "\n",
        encoding="utf-8",
    )

    system = root / "system" / "BBL" / "filament"
    write_preset_file(system / "fdm_filament_common.json", COMMON)
    write_preset_file(system / "fdm_filament_pla.json", FDM_PLA)
    write_preset_file(system / "Generic PLA.json", GENERIC_PLA)
    write_preset_file(system / "Generic PETG.json", GENERIC_PETG)

    (root / "user" / "default").mkdir(parents=True)
    user = root / "user" / PRESET_FOLDER / "filament" / "base"
    write_preset_file(user / "My PLA.json", MY_PLA)
    (user / "My PLA.info").write_text(MY_PLA_INFO, encoding="utf-8")
    return root


@pytest.fixture
def studio_paths(studio_root):
    return detect(appdata_path=studio_root)


@pytest.fixture
def system_dir(studio_paths):
    return studio_paths.system_dir


@pytest.fixture
def user_dir(studio_paths):
    return user_filament_dir(studio_paths)


@pytest.fixture
def registry(studio_paths, user_dir):
    return PresetRegistry.build(studio_paths.system_dir, user_dir)


class FakeProbe:
    """Stands in for the process table scan."""

    def __init__(self, running: bool = False):
        self.running = running
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.running


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def engine(studio_paths, probe):
    return PresetEngine(studio_paths, probe=probe)
