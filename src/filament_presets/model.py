"""In-memory model of a Bambu Studio filament preset file and its .info companion.

Summary: Bambu Studio presets are json objects with a few hundred keys, and the key set
grows with each host application release. So there is no attempt at a typed record
here. Preset wraps the ordered key/value dictionary read from disk (the ground truth),
and a handful of typed accessors sit on top for the fields the engine actually
computes. Everything else passes through untouched.

Notes:
    - Almost every value is a string or a list of strings. Lists carry one value per
    extruder, so on dual extruder machines (H2D and friends) they have two entries.
    Numbers are stored as strings ("220", "0.98", "80%").
    - The string "nil" means "inherit this from the parent preset". It is not the
    same as an empty string and it is not zero.
    - Serialisation mirrors Bambu Studio: 4 space indent, key order as read, trailing
    newline. An unmodified parse/serialise cycle reproduces the file byte for byte.
"""
import json
import logging
import re
from copy import deepcopy
from pathlib import Path
from typing import Any, NamedTuple, Self, TypeAlias

from .errors import PresetIOError, PresetNotFoundError, PresetParseError

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"
PRESET_EXT = ".json"
INFO_EXT = ".info"
DEFAULT_INDENT = 4
# One value per extruder on dual extruder machines.
DUAL_ARITY = 2
# "Inherit from parent" sentinel.
NIL = "nil"

# json keys
NAME = "name"
INHERITS = "inherits"
FROM = "from"
FILAMENT_ID = "filament_id"
SETTING_ID = "setting_id"
INSTANTIATION = "instantiation"
DESCRIPTION = "description"
FILAMENT_TYPE = "filament_type"
FILAMENT_VENDOR = "filament_vendor"
FILAMENT_SETTINGS_ID = "filament_settings_id"
NOZZLE_TEMPERATURE = "nozzle_temperature"
COMPATIBLE_PRINTERS = "compatible_printers"

# Values of "from".
FROM_SYSTEM = "system"
FROM_USER = "User"

# Leaves room for an optional % suffix, which is stripped before matching.
_NUMBER = re.compile(r"-?\d+(\.\d+)?")

SettingValue: TypeAlias = str | list[str] | Any
SettingsDict: TypeAlias = dict[str, SettingValue]


def is_nil(value: SettingValue) -> bool:
    """Test if value is the inherit sentinel.

    True for "nil" and for non-empty lists where every element is "nil".
    """
    if isinstance(value, str):
        return value == NIL
    if isinstance(value, list) and value:
        return all(item == NIL for item in value)
    return False


def _detect_indent(text: str) -> int:
    """Indent width used by a json text, DEFAULT_INDENT if it can't be determined."""
    for line in text.splitlines()[1:]:
        stripped = line.lstrip(" ")
        if stripped and stripped[0] not in "}]":
            width = len(line) - len(stripped)
            return width if width > 0 else DEFAULT_INDENT
    return DEFAULT_INDENT


def _format_like(observed: str | None, value: float, decimals: int) -> str:
    """Format value following the convention of an existing value.

    The observed value decides the % suffix and the number of decimals. decimals is
    the fallback when there is nothing to observe, and a floor if the observed
    precision would throw away part of the value (e.g. 0.8 into a field that
    currently holds "1").
    """
    suffix = ""
    places = decimals
    if observed is not None:
        text = observed.strip()
        if text.endswith("%"):
            suffix = "%"
            text = text[:-1]
        if _NUMBER.fullmatch(text):
            places = len(text.partition(".")[2])

    if abs(round(value, places) - value) > 1e-9:
        places = max(places, decimals)

    return f"{value:.{places}f}{suffix}"


class Preset:
    """Container for one filament preset.

    The settings dictionary is the single source of truth. Typed accessors read and
    write it directly, so there is no second copy to get out of sync. Setting a value
    never removes or reorders other keys, and new keys are appended at the end.
    """

    _settings: SettingsDict
    # Source file, if the preset was read from disk. Informational only.
    source: Path | None
    # Formatting captured at parse time so unmodified files round trip exactly.
    _indent: int
    _trailing_newline: bool

    def __init__(
        self,
        settings: SettingsDict | None = None,
        source: Path | None = None,
        indent: int = DEFAULT_INDENT,
        trailing_newline: bool = True,
    ) -> None:
        """Create preset from an (ordered) settings dictionary."""
        self._settings = {} if settings is None else settings
        self.source = source
        self._indent = indent
        self._trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str, source: Path | None = None) -> Self:
        """Parse preset json text."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as err:
            raise PresetParseError(f"invalid json ({err})", source) from err

        if not isinstance(data, dict):
            raise PresetParseError(
                f"expected a json object, got {type(data).__name__}", source
            )

        return cls(
            data,
            source=source,
            indent=_detect_indent(text),
            trailing_newline=text.endswith("\n"),
        )

    def serialize(self) -> str:
        """Return preset as json text in the Bambu Studio on-disk format."""
        text = json.dumps(self._settings, indent=self._indent, ensure_ascii=False)
        if self._trailing_newline:
            text += "\n"
        return text

    def copy(self) -> Self:
        """Return a deep copy (new presets are always 4 space/newline terminated)."""
        return type(self)(deepcopy(self._settings), source=self.source)

    # --- Raw access ---

    @property
    def raw(self) -> SettingsDict:
        """The full ordered settings dictionary. Mutations are live."""
        return self._settings

    @property
    def field_count(self) -> int:
        """Number of keys in the preset."""
        return len(self._settings)

    def __contains__(self, key: str) -> bool:
        return key in self._settings

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Preset):
            return NotImplemented
        return self._settings == other._settings

    def __repr__(self) -> str:
        return f"Preset(name={self.name!r}, fields={self.field_count})"

    # --- Generic helpers ---

    def get(self, key: str, default: SettingValue = None) -> SettingValue:
        """Return raw value for key."""
        return self._settings.get(key, default)

    def get_string(self, key: str) -> str | None:
        """Return a bare string field, None if missing or not a string."""
        value = self._settings.get(key)
        return value if isinstance(value, str) else None

    def get_array(self, key: str) -> list[str] | None:
        """Return a string array field, None if missing or not a list of strings."""
        value = self._settings.get(key)
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return list(value)
        return None

    def get_first(self, key: str) -> str | None:
        """Return the first element of an array field, or a bare string field."""
        value = self._settings.get(key)
        if isinstance(value, list):
            if value and isinstance(value[0], str):
                return value[0]
            return None
        if isinstance(value, str):
            return value
        return None

    def set_string(self, key: str, value: str) -> None:
        """Set a bare (not array wrapped) string field."""
        self._settings[key] = value

    def set_array(self, key: str, values: list[str]) -> None:
        """Set a string array field."""
        self._settings[key] = list(values)

    def set_uniform(self, key: str, value: str) -> None:
        """Set every position of a field to value, keeping the field's shape.

        Arrays keep their arity, bare strings stay bare strings. Missing fields (and
        empty arrays, which have no arity to keep) are created with dual extruder
        arity.
        """
        current = self._settings.get(key)
        if isinstance(current, list) and current:
            self._settings[key] = [value] * len(current)
        elif isinstance(current, str):
            self._settings[key] = value
        else:
            self._settings[key] = [value] * DUAL_ARITY

    def set_number(self, key: str, value: float, decimals: int = 0) -> None:
        """Set a numeric field, formatted the way the existing value is formatted."""
        self.set_uniform(key, _format_like(self.get_first(key), value, decimals))

    # --- Typed accessors ---

    def _set_or_delete(self, key: str, value: str | None) -> None:
        if value is None:
            self._settings.pop(key, None)
        else:
            self._settings[key] = value

    @property
    def name(self) -> str | None:
        """Display name. Also the key for inherits lookups."""
        return self.get_string(NAME)

    @name.setter
    def name(self, value: str) -> None:
        self._set_or_delete(NAME, value)

    @property
    def inherits(self) -> str | None:
        """Parent preset name. Empty string for fully flattened presets."""
        return self.get_string(INHERITS)

    @inherits.setter
    def inherits(self, value: str) -> None:
        self._set_or_delete(INHERITS, value)

    @property
    def filament_id(self) -> str | None:
        """Identifies the physical material across printer/nozzle variants."""
        return self.get_string(FILAMENT_ID)

    @filament_id.setter
    def filament_id(self, value: str) -> None:
        self._set_or_delete(FILAMENT_ID, value)

    @property
    def setting_id(self) -> str | None:
        """Unique id of this preset instance."""
        return self.get_string(SETTING_ID)

    @setting_id.setter
    def setting_id(self, value: str) -> None:
        self._set_or_delete(SETTING_ID, value)

    @property
    def origin(self) -> str | None:
        """The "from" field, "system" or "User"."""
        return self.get_string(FROM)

    @origin.setter
    def origin(self, value: str) -> None:
        self._set_or_delete(FROM, value)

    @property
    def instantiation(self) -> bool:
        """True for selectable presets, False for templates."""
        return self.get_string(INSTANTIATION) == "true"

    @instantiation.setter
    def instantiation(self, value: bool) -> None:
        self._settings[INSTANTIATION] = "true" if value else "false"

    @property
    def description(self) -> str | None:
        return self.get_string(DESCRIPTION)

    @description.setter
    def description(self, value: str) -> None:
        self._set_or_delete(DESCRIPTION, value)

    @property
    def filament_type(self) -> str | None:
        """Material family, e.g. PLA. First element of an array field."""
        return self.get_first(FILAMENT_TYPE)

    @property
    def filament_vendor(self) -> str | None:
        return self.get_first(FILAMENT_VENDOR)

    @property
    def nozzle_temperature(self) -> list[str] | None:
        return self.get_array(NOZZLE_TEMPERATURE)

    @property
    def compatible_printers(self) -> list[str] | None:
        return self.get_array(COMPATIBLE_PRINTERS)

    @property
    def filament_settings_id(self) -> list[str] | None:
        return self.get_array(FILAMENT_SETTINGS_ID)


class MetadataRecord(NamedTuple):
    """Content of the .info companion file written beside user presets.

    The format is not json, but `key = value` lines in a fixed order:
        sync_info =
        user_id = 1881310893
        setting_id = PFUS50d8c9d5139548
        base_id =
        updated_time = 1770267863
    Empty values are written as `key =` with no trailing space (as Bambu Studio
    does). Bambu Studio uses updated_time to spot changes, so it must be refreshed
    whenever the preset content changes.
    """

    sync_info: str = ""
    # The installation/preset folder id.
    user_id: str = ""
    setting_id: str = ""
    base_id: str = ""
    # Seconds since epoch.
    updated_time: int = 0

    @classmethod
    def from_text(cls, text: str, source: Path | None = None) -> Self:
        """Parse .info content. Unknown keys are ignored, missing keys default."""
        values: dict[str, str] = {}
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            key, sep, value = line.partition("=")
            if not sep:
                raise PresetParseError(
                    f"line {line_no}: expected 'key = value', got {line!r}", source
                )
            values[key.strip()] = value.strip()

        raw_time = values.get("updated_time", "")
        try:
            updated_time = int(raw_time) if raw_time else 0
        except ValueError as err:
            raise PresetParseError(
                f"updated_time is not an integer: {raw_time!r}", source
            ) from err

        return cls(
            sync_info=values.get("sync_info", ""),
            user_id=values.get("user_id", ""),
            setting_id=values.get("setting_id", ""),
            base_id=values.get("base_id", ""),
            updated_time=updated_time,
        )

    def to_text(self) -> str:
        """Return .info file content."""
        lines = []
        for key, value in self._asdict().items():
            value = str(value)
            lines.append(f"{key} = {value}" if value else f"{key} =")
        return "\n".join(lines) + "\n"

    def touched(self, now: int) -> Self:
        """Return a copy with updated_time set to now."""
        return self._replace(updated_time=now)


def info_path_for(json_path: Path) -> Path:
    """Path of the .info companion for a preset json file."""
    return json_path.with_suffix(INFO_EXT)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding=DEFAULT_ENCODING)
    except FileNotFoundError as err:
        raise PresetNotFoundError(str(path)) from err
    except UnicodeDecodeError as err:
        raise PresetParseError(f"not {DEFAULT_ENCODING} text ({err})", path) from err
    except OSError as err:
        raise PresetIOError("read", path, err) from err


def load_preset(path: Path) -> Preset:
    """Read and parse a preset file."""
    preset = Preset.parse(_read_text(path), source=path)
    logger.debug(
        "Read preset %r with %d fields from %s",
        preset.name or "<unnamed>",
        preset.field_count,
        path,
    )
    return preset


def load_metadata(json_path: Path) -> MetadataRecord | None:
    """Read the .info companion for a preset, None if there isn't one."""
    info_path = info_path_for(json_path)
    if not info_path.exists():
        return None
    record = MetadataRecord.from_text(_read_text(info_path), source=info_path)
    logger.debug(
        "Read metadata for %s: setting_id=%s, user_id=%s",
        json_path,
        record.setting_id,
        record.user_id,
    )
    return record
