# cspell:ignore Bambu PFUS vitrification
"""Build new user filament presets from manufacturer specification data.

Summary: The generator takes a FilamentSpec (brand, material and whatever numbers
the manufacturer publishes), picks a Bambu Studio "Generic <material>" system preset
as the starting point, flattens it, and overlays the spec values. The result is a
stand alone user preset (inherits = "") plus its .info metadata, ready to preview and
then hand to the writer.

Notes:
    - The generator does no I/O. Apart from the random identifiers (and the default
    timestamp), output depends only on the inputs.
    - Material handling is a closed set (MaterialType) with an explicit OTHER
    fallback. Anything we don't recognise starts from Generic PLA, which is the most
    forgiving base.
    - Bambu Studio doesn't document how it builds ids. Observed samples:
        system: filament_id "GFL99", setting_id "GFSL99"
        user:   filament_id "P" + 7 hex, setting_id "PFUS" + 14 hex
    We generate the user formats, which can never collide with the G prefixed system
    ids. Worth re-checking against a real install after BS upgrades.
"""
import logging
import random
import re
import time
from enum import StrEnum
from typing import Any, Callable, Final, NamedTuple, Self

from .errors import PresetNotFoundError
from .inheritance import MAX_INHERITANCE_DEPTH, resolve
from .model import (
    COMPATIBLE_PRINTERS,
    FILAMENT_SETTINGS_ID,
    FILAMENT_TYPE,
    FILAMENT_VENDOR,
    FROM_USER,
    PRESET_EXT,
    SETTING_ID,
    MetadataRecord,
    Preset,
)
from .registry import PresetRegistry

logger = logging.getLogger(__name__)

FILAMENT_ID_PREFIX: Final = "P"
SETTING_ID_PREFIX: Final = "PFUS"
# Characters that can't appear in file names on at least one platform.
_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*]')

_system_random = random.SystemRandom()


class MaterialType(StrEnum):
    """Filament material families we know how to handle."""

    PLA = "PLA"
    PETG = "PETG"
    ABS = "ABS"
    ASA = "ASA"
    TPU = "TPU"
    PA = "PA"
    PC = "PC"
    PVA = "PVA"
    HIPS = "HIPS"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, text: str) -> "MaterialType":
        """Classify a free text material description.

        Case insensitive substring match. Order matters: PLA must be tested before PA
        (or every PLA would be nylon), and PC before ABS so PC-ABS blends count as PC.
        """
        upper = text.upper()
        for material, markers in _MATERIAL_MARKERS:
            if any(marker in upper for marker in markers):
                return material
        return cls.OTHER


_MATERIAL_MARKERS: Final = (
    (MaterialType.PLA, ("PLA",)),
    (MaterialType.PETG, ("PETG",)),
    (MaterialType.ASA, ("ASA",)),
    (MaterialType.HIPS, ("HIPS",)),
    (MaterialType.PVA, ("PVA",)),
    (MaterialType.PC, ("PC", "POLYCARBONATE")),
    (MaterialType.ABS, ("ABS",)),
    (MaterialType.TPU, ("TPU", "TPE")),
    (MaterialType.PA, ("PA", "NYLON")),
)

FALLBACK_BASE: Final = "Generic PLA"

# Generic system presets shipped with Bambu Studio.
BASE_PRESETS: Final = {
    MaterialType.PLA: "Generic PLA",
    MaterialType.PETG: "Generic PETG",
    MaterialType.ABS: "Generic ABS",
    MaterialType.ASA: "Generic ASA",
    MaterialType.TPU: "Generic TPU",
    MaterialType.PA: "Generic PA",
    MaterialType.PC: "Generic PC",
    MaterialType.PVA: "Generic PVA",
    MaterialType.HIPS: "Generic HIPS",
    MaterialType.OTHER: FALLBACK_BASE,
}


class MaterialConstraints(NamedTuple):
    """Outer bounds of physically sensible temperatures (C) for a material."""

    nozzle_min: int
    nozzle_max: int
    bed_min: int
    bed_max: int


CONSTRAINTS: Final = {
    MaterialType.PLA: MaterialConstraints(180, 235, 0, 70),
    MaterialType.PETG: MaterialConstraints(210, 260, 40, 100),
    MaterialType.ABS: MaterialConstraints(210, 270, 70, 120),
    MaterialType.ASA: MaterialConstraints(220, 270, 80, 120),
    MaterialType.TPU: MaterialConstraints(200, 250, 20, 70),
    MaterialType.PA: MaterialConstraints(230, 300, 50, 100),
    MaterialType.PC: MaterialConstraints(250, 320, 90, 150),
    MaterialType.PVA: MaterialConstraints(170, 220, 30, 65),
    MaterialType.HIPS: MaterialConstraints(210, 260, 80, 115),
    # Permissive, we don't know what it is.
    MaterialType.OTHER: MaterialConstraints(150, 400, 0, 120),
}

MAX_RETRACTION_MM: Final = 15.0
MAX_RETRACTION_SPEED: Final = 100
MAX_FAN_PERCENT: Final = 100
DIAMETER_RANGE: Final = (1.0, 3.5)


class FilamentSpec(NamedTuple):
    """Specification record for one filament, as supplied by the caller.

    Temperatures in C, speeds in mm/s, fan values in percent. None means "not
    published", and leaves the base preset value alone.
    """

    # Product/variant name, e.g. "PolyLite Pro".
    name: str = ""
    brand: str = ""
    material: str = ""

    nozzle_temp_min: int | None = None
    nozzle_temp_max: int | None = None
    bed_temp_min: int | None = None
    bed_temp_max: int | None = None

    # Explicit values. Take precedence over the ranges above.
    nozzle_temperature: int | None = None
    nozzle_temperature_initial_layer: int | None = None
    hot_plate_temp: int | None = None
    hot_plate_temp_initial_layer: int | None = None
    cool_plate_temp: int | None = None
    cool_plate_temp_initial_layer: int | None = None
    eng_plate_temp: int | None = None
    eng_plate_temp_initial_layer: int | None = None
    textured_plate_temp: int | None = None
    textured_plate_temp_initial_layer: int | None = None

    max_volumetric_speed: float | None = None
    filament_flow_ratio: float | None = None
    pressure_advance: float | None = None

    fan_min_speed: int | None = None
    fan_max_speed: int | None = None
    # Single fan figure from a datasheet. Used if min/max aren't given.
    fan_speed_percent: int | None = None
    overhang_fan_speed: int | None = None
    close_fan_the_first_x_layers: int | None = None
    additional_cooling_fan_speed: int | None = None
    slow_down_layer_time: int | None = None
    slow_down_min_speed: int | None = None

    retraction_distance_mm: float | None = None
    retraction_speed_mm_s: int | None = None
    deretraction_speed_mm_s: int | None = None
    bridge_speed: int | None = None

    density_g_cm3: float | None = None
    diameter_mm: float | None = None
    temperature_vitrification: int | None = None
    filament_cost: float | None = None
    max_speed_mm_s: int | None = None

    source_url: str = ""
    # 0 means the upstream extraction has no idea what this is.
    extraction_confidence: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Build from a (json) dictionary, ignoring keys we don't know."""
        return cls(**{key: value for key, value in data.items() if key in cls._fields})

    @property
    def material_type(self) -> MaterialType:
        return MaterialType.parse(self.material)


class ValidationWarning(NamedTuple):
    """A spec value outside the sensible range for its material."""

    field: str
    message: str
    value: str


class GeneratedPreset(NamedTuple):
    """Generator output. Nothing has been written yet."""

    preset: Preset
    metadata: MetadataRecord
    filename: str
    base_name: str
    # Flattened base, for previews/diffs.
    base: Preset


def _first(*values: float | None) -> float | None:
    for value in values:
        if value is not None:
            return value
    return None


def _offset(value: float | None, delta: float) -> float | None:
    return None if value is None else max(value + delta, 0)


class FieldRule(NamedTuple):
    """Maps spec attributes onto one preset field."""

    field: str
    value: Callable[[FilamentSpec], float | None]
    # Fallback number of decimals if the base value gives no hint.
    decimals: int = 0


# Order is the order fields are written, which only matters for new keys.
FIELD_RULES: Final = (
    # Nozzle. Explicit value first, then the top of the published range.
    FieldRule("nozzle_temperature", lambda s: _first(s.nozzle_temperature, s.nozzle_temp_max)),
    FieldRule(
        "nozzle_temperature_initial_layer",
        lambda s: _first(
            s.nozzle_temperature_initial_layer,
            _offset(s.nozzle_temperature, 5),
            _offset(s.nozzle_temp_max, 5),
        ),
    ),
    # Bounds for the BS temperature slider.
    FieldRule("nozzle_temperature_range_high", lambda s: _offset(s.nozzle_temp_max, 20)),
    FieldRule("nozzle_temperature_range_low", lambda s: s.nozzle_temp_min),
    # Per plate bed temperatures.
    FieldRule("hot_plate_temp", lambda s: _first(s.hot_plate_temp, s.bed_temp_max)),
    FieldRule(
        "hot_plate_temp_initial_layer",
        lambda s: _first(s.hot_plate_temp_initial_layer, s.hot_plate_temp, s.bed_temp_max),
    ),
    FieldRule("cool_plate_temp", lambda s: _first(s.cool_plate_temp, s.bed_temp_min)),
    FieldRule(
        "cool_plate_temp_initial_layer",
        lambda s: _first(
            s.cool_plate_temp_initial_layer, s.cool_plate_temp, s.bed_temp_min
        ),
    ),
    FieldRule("eng_plate_temp", lambda s: _first(s.eng_plate_temp, s.bed_temp_max)),
    FieldRule(
        "eng_plate_temp_initial_layer",
        lambda s: _first(s.eng_plate_temp_initial_layer, s.eng_plate_temp, s.bed_temp_max),
    ),
    FieldRule(
        "textured_plate_temp",
        lambda s: _first(s.textured_plate_temp, _offset(s.bed_temp_min, -5)),
    ),
    FieldRule(
        "textured_plate_temp_initial_layer",
        lambda s: _first(
            s.textured_plate_temp_initial_layer,
            s.textured_plate_temp,
            _offset(s.bed_temp_min, -5),
        ),
    ),
    # Flow.
    FieldRule("filament_max_volumetric_speed", lambda s: s.max_volumetric_speed),
    FieldRule("filament_flow_ratio", lambda s: s.filament_flow_ratio, 2),
    FieldRule("pressure_advance", lambda s: s.pressure_advance, 3),
    # Fan and cooling.
    FieldRule("fan_max_speed", lambda s: _first(s.fan_max_speed, s.fan_speed_percent)),
    FieldRule(
        "fan_min_speed",
        lambda s: _first(
            s.fan_min_speed,
            None if s.fan_speed_percent is None else int(s.fan_speed_percent * 0.6),
        ),
    ),
    FieldRule("overhang_fan_speed", lambda s: s.overhang_fan_speed),
    FieldRule("close_fan_the_first_x_layers", lambda s: s.close_fan_the_first_x_layers),
    FieldRule("additional_cooling_fan_speed", lambda s: s.additional_cooling_fan_speed),
    FieldRule("slow_down_layer_time", lambda s: s.slow_down_layer_time),
    FieldRule("slow_down_min_speed", lambda s: s.slow_down_min_speed),
    # Retraction.
    FieldRule("filament_retraction_length", lambda s: s.retraction_distance_mm, 1),
    FieldRule("filament_retraction_speed", lambda s: s.retraction_speed_mm_s),
    FieldRule("filament_deretraction_speed", lambda s: s.deretraction_speed_mm_s),
    FieldRule("filament_bridge_speed", lambda s: s.bridge_speed),
    # Physical properties.
    FieldRule("filament_density", lambda s: s.density_g_cm3, 2),
    FieldRule("filament_diameter", lambda s: s.diameter_mm, 2),
    FieldRule("temperature_vitrification", lambda s: s.temperature_vitrification),
    FieldRule("filament_cost", lambda s: s.filament_cost, 2),
)


def generate_filament_id(rng: random.Random | None = None) -> str:
    """Return a user style filament_id: "P" + 7 hex characters."""
    rng = rng or _system_random
    return f"{FILAMENT_ID_PREFIX}{rng.getrandbits(28):07x}"


def generate_setting_id(rng: random.Random | None = None) -> str:
    """Return a user style setting_id: "PFUS" + 14 hex characters."""
    rng = rng or _system_random
    return f"{SETTING_ID_PREFIX}{rng.getrandbits(56):014x}"


def constraints_for(material: MaterialType) -> MaterialConstraints:
    return CONSTRAINTS[material]


def validate_spec(spec: FilamentSpec) -> list[ValidationWarning]:
    """Check spec values against the sensible ranges for its material.

    Out of range values usually mean the upstream extraction got it wrong. These are
    warnings, the caller decides what to do about them.
    """
    warnings: list[ValidationWarning] = []
    limits = constraints_for(spec.material_type)

    def check(field: str, value: float | None, low: float, high: float, what: str) -> None:
        if value is not None and not low <= value <= high:
            warnings.append(
                ValidationWarning(
                    field=field,
                    message=f"{what} {value} out of range for {spec.material or 'material'}"
                    f" ({low}-{high})",
                    value=str(value),
                )
            )

    check("nozzle_temp_min", spec.nozzle_temp_min, limits.nozzle_min, limits.nozzle_max, "Nozzle temp min")
    check("nozzle_temp_max", spec.nozzle_temp_max, limits.nozzle_min, limits.nozzle_max, "Nozzle temp max")
    check("bed_temp_min", spec.bed_temp_min, limits.bed_min, limits.bed_max, "Bed temp min")
    check("bed_temp_max", spec.bed_temp_max, limits.bed_min, limits.bed_max, "Bed temp max")
    check("retraction_distance_mm", spec.retraction_distance_mm, 0, MAX_RETRACTION_MM, "Retraction distance")
    check("retraction_speed_mm_s", spec.retraction_speed_mm_s, 0, MAX_RETRACTION_SPEED, "Retraction speed")
    check("fan_speed_percent", spec.fan_speed_percent, 0, MAX_FAN_PERCENT, "Fan speed")
    check("diameter_mm", spec.diameter_mm, *DIAMETER_RANGE, "Diameter")
    return warnings


def choose_base(spec: FilamentSpec) -> str:
    """Name of the system preset to start from for this spec."""
    if spec.extraction_confidence <= 0:
        return FALLBACK_BASE
    return BASE_PRESETS[spec.material_type]


def apply_spec(preset: Preset, spec: FilamentSpec) -> None:
    """Overlay populated spec values onto preset, in place.

    Array fields keep their arity and every position gets the same value (we have
    no basis to set the extruders differently). Spec values that are None leave the
    preset untouched.
    """
    for rule in FIELD_RULES:
        value = rule.value(spec)
        if value is not None:
            preset.set_number(rule.field, value, rule.decimals)

    if spec.material:
        preset.set_uniform(FILAMENT_TYPE, spec.material)
    if spec.brand:
        preset.set_uniform(FILAMENT_VENDOR, spec.brand)


def _number(preset: Preset, key: str) -> float | None:
    text = preset.get_first(key)
    if text is None:
        return None
    try:
        return float(text.strip().rstrip("%"))
    except ValueError:
        # nil and friends.
        return None


def _integer(preset: Preset, key: str) -> int | None:
    value = _number(preset, key)
    return None if value is None else int(round(value))


def extract_spec(preset: Preset) -> FilamentSpec:
    """Read a FilamentSpec back out of a preset (the reverse of apply_spec)."""
    range_high = _integer(preset, "nozzle_temperature_range_high")
    return FilamentSpec(
        name=preset.name or "",
        brand=preset.filament_vendor or "",
        material=preset.filament_type or "",
        nozzle_temp_min=_integer(preset, "nozzle_temperature_range_low"),
        nozzle_temp_max=None if range_high is None else max(range_high - 20, 0),
        bed_temp_min=_integer(preset, "cool_plate_temp"),
        bed_temp_max=_integer(preset, "hot_plate_temp"),
        nozzle_temperature=_integer(preset, "nozzle_temperature"),
        nozzle_temperature_initial_layer=_integer(preset, "nozzle_temperature_initial_layer"),
        hot_plate_temp=_integer(preset, "hot_plate_temp"),
        hot_plate_temp_initial_layer=_integer(preset, "hot_plate_temp_initial_layer"),
        cool_plate_temp=_integer(preset, "cool_plate_temp"),
        cool_plate_temp_initial_layer=_integer(preset, "cool_plate_temp_initial_layer"),
        eng_plate_temp=_integer(preset, "eng_plate_temp"),
        eng_plate_temp_initial_layer=_integer(preset, "eng_plate_temp_initial_layer"),
        textured_plate_temp=_integer(preset, "textured_plate_temp"),
        textured_plate_temp_initial_layer=_integer(preset, "textured_plate_temp_initial_layer"),
        max_volumetric_speed=_number(preset, "filament_max_volumetric_speed"),
        filament_flow_ratio=_number(preset, "filament_flow_ratio"),
        pressure_advance=_number(preset, "pressure_advance"),
        fan_min_speed=_integer(preset, "fan_min_speed"),
        fan_max_speed=_integer(preset, "fan_max_speed"),
        overhang_fan_speed=_integer(preset, "overhang_fan_speed"),
        close_fan_the_first_x_layers=_integer(preset, "close_fan_the_first_x_layers"),
        additional_cooling_fan_speed=_integer(preset, "additional_cooling_fan_speed"),
        slow_down_layer_time=_integer(preset, "slow_down_layer_time"),
        slow_down_min_speed=_integer(preset, "slow_down_min_speed"),
        retraction_distance_mm=_number(preset, "filament_retraction_length"),
        retraction_speed_mm_s=_integer(preset, "filament_retraction_speed"),
        deretraction_speed_mm_s=_integer(preset, "filament_deretraction_speed"),
        bridge_speed=_integer(preset, "filament_bridge_speed"),
        density_g_cm3=_number(preset, "filament_density"),
        diameter_mm=_number(preset, "filament_diameter"),
        temperature_vitrification=_integer(preset, "temperature_vitrification"),
        filament_cost=_number(preset, "filament_cost"),
        source_url="preset",
    )


def preset_display_name(spec: FilamentSpec, target_printer: str | None = None) -> str:
    """Compose "<brand> <material> <variant>[ @<printer>]"."""
    name = " ".join(part.strip() for part in (spec.brand, spec.material, spec.name) if part.strip())
    if not name:
        raise ValueError("Filament spec needs at least one of brand, material or name.")
    if target_printer:
        name += f" @{target_printer}"
    return name


def preset_filename(name: str) -> str:
    """File name for a preset, with characters that upset filesystems replaced."""
    return _UNSAFE_FILENAME.sub("_", name) + PRESET_EXT


def generate(
    spec: FilamentSpec,
    base_name: str | None,
    registry: PresetRegistry,
    *,
    target_printer: str | None = None,
    user_id: str = "",
    updated_time: int | None = None,
    rng: random.Random | None = None,
    max_depth: int = MAX_INHERITANCE_DEPTH,
) -> GeneratedPreset:
    """Generate a self contained user preset from spec.

    base_name names the system preset to start from. If None, it is chosen from the
    spec's material (see choose_base), falling back to Generic PLA if the material
    specific base isn't installed. An explicitly named base that doesn't exist is an
    error.

    user_id is the installation id (preset folder) for the .info file. It is passed in
    rather than looked up so the generator stays free of I/O.
    """
    if base_name is None:
        base_name = choose_base(spec)
        if base_name not in registry and base_name != FALLBACK_BASE:
            logger.warning(
                "Base preset '%s' not installed, falling back to '%s'",
                base_name,
                FALLBACK_BASE,
            )
            base_name = FALLBACK_BASE

    base_preset = registry.get_by_name(base_name)
    if base_preset is None:
        raise PresetNotFoundError(base_name)

    base = resolve(base_preset, registry, max_depth)
    preset = base.copy()
    name = preset_display_name(spec, target_printer)
    filament_id = generate_filament_id(rng)
    setting_id = generate_setting_id(rng)

    logger.debug(
        "Generating '%s' (material=%s, base=%s)", name, spec.material_type, base_name
    )

    # Identity. Fully flattened and owned by the user.
    preset.name = name
    preset.inherits = ""
    preset.origin = FROM_USER
    preset.filament_id = filament_id
    if SETTING_ID in preset:
        # Don't leave the system id behind.
        preset.setting_id = setting_id
    preset.instantiation = True
    preset.set_uniform(FILAMENT_SETTINGS_ID, name)
    # Empty means compatible with every printer.
    preset.set_array(COMPATIBLE_PRINTERS, [])

    apply_spec(preset, spec)

    metadata = MetadataRecord(
        sync_info="",
        user_id=user_id,
        setting_id=setting_id,
        base_id="",
        updated_time=int(time.time()) if updated_time is None else updated_time,
    )

    logger.debug(
        "Generated '%s' with %d fields (base: %s)", name, preset.field_count, base_name
    )
    return GeneratedPreset(
        preset=preset,
        metadata=metadata,
        filename=preset_filename(name),
        base_name=base_name,
        base=base,
    )
