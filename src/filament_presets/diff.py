"""Compare filament presets, for previews, side by side listings and Excel export.

Two views of a difference:
    - FieldDiff lists (draft_diffs, compare_presets) are short, human readable change
    lists grouped by category. These back the generate preview and the compare
    command.
    - DiffMatrix holds any number of presets as columns against setting rows, and is
    written to .xlsx with write_workbook. Cells are coloured with builtin Excel
    styles according to how they differ from the reference (first) column.

Values are compared and shown in display form: the first element of per extruder
arrays. Good enough for single extruder machines, and for dual extruder presets
where both positions match (which is everything we generate).
"""
import logging
from enum import Enum, StrEnum
from pathlib import Path
from typing import Iterator, NamedTuple

from openpyxl import Workbook  # type: ignore[import-untyped]
from openpyxl.utils import get_column_letter  # type: ignore[import-untyped]

from .errors import PresetIOError
from .model import Preset, SettingValue

logger = logging.getLogger(__name__)

MISSING = "--"
UNNAMED = "<unnamed>"

# Identity/bookkeeping keys that always differ between a base and a generated
# preset, and aren't interesting in a preview.
DRAFT_SKIP_FIELDS = frozenset(
    {
        "name",
        "filament_id",
        "filament_settings_id",
        "setting_id",
        "from",
        "inherits",
        "instantiation",
        "compatible_printers",
        "compatible_printers_condition",
        "filament_vendor",
        "filament_type",
        "version",
    }
)


class Category(StrEnum):
    """Setting categories, in display order."""

    TEMPERATURE = "Temperature"
    SPEED_FLOW = "Speed & Flow"
    COOLING_FAN = "Cooling & Fan"
    RETRACTION = "Retraction"
    PHYSICAL = "Physical Properties"
    IDENTITY = "Identity & Metadata"
    OTHER = "Other"


# First match wins, so order matters (e.g. "fan_cooling_layer_time" is a fan
# setting, "nozzle_temperature_range_low" a temperature).
_CATEGORY_MARKERS = (
    (Category.TEMPERATURE, ("temperature", "temp")),
    (Category.SPEED_FLOW, ("speed", "flow", "volumetric", "acceleration", "jerk")),
    (Category.COOLING_FAN, ("fan", "cool", "slow_down")),
    (Category.RETRACTION, ("retract", "wipe", "z_hop")),
    (Category.PHYSICAL, ("density", "diameter", "cost", "vitrification", "shrinkage")),
    (
        Category.IDENTITY,
        (
            "name",
            "id",
            "version",
            "inherits",
            "from",
            "vendor",
            "type",
            "compatible",
            "setting",
            "instantiation",
        ),
    ),
)


class FieldDiff(NamedTuple):
    """One setting, before and after (or left and right)."""

    key: str
    label: str
    old: str
    new: str


class DiffCategory(NamedTuple):
    category: Category
    diffs: list[FieldDiff]


class CompareResult(NamedTuple):
    """Side by side comparison of two presets."""

    name_a: str
    name_b: str
    categories: list[DiffCategory]
    # Number of distinct keys across both presets.
    total_fields: int
    changed_fields: int


def display_value(value: SettingValue | None) -> str:
    """Short text form of a setting value."""
    match value:
        case None:
            return MISSING
        case str():
            return value
        case bool():
            return "true" if value else "false"
        case list():
            if not value:
                return "[]"
            first = value[0]
            return first if isinstance(first, str) else str(first)
        case dict():
            return "{...}"
        case _:
            return str(value)


def key_label(key: str) -> str:
    """filament_flow_ratio -> Filament Flow Ratio."""
    return " ".join(word[:1].upper() + word[1:] for word in key.split("_"))


def key_category(key: str) -> Category:
    for category, markers in _CATEGORY_MARKERS:
        if any(marker in key for marker in markers):
            return category
    return Category.OTHER


def draft_diffs(base: Preset, generated: Preset) -> list[FieldDiff]:
    """Settings in generated that differ from base, sorted by label.

    Identity fields are left out, they always differ.
    """
    diffs = []
    for key, value in generated.raw.items():
        if key in DRAFT_SKIP_FIELDS:
            continue
        old = display_value(base.get(key))
        new = display_value(value)
        if old != new:
            diffs.append(FieldDiff(key, key_label(key), old, new))
    return sorted(diffs, key=lambda diff: diff.label)


def compare_presets(a: Preset, b: Preset, show_identical: bool = False) -> CompareResult:
    """Compare every key in a and b, grouped by category."""
    keys = sorted(set(a.raw) | set(b.raw))
    grouped: dict[Category, list[FieldDiff]] = {}
    changed = 0

    for key in keys:
        old = display_value(a.get(key))
        new = display_value(b.get(key))
        different = old != new
        if different:
            changed += 1
        if different or show_identical:
            grouped.setdefault(key_category(key), []).append(
                FieldDiff(key, key_label(key), old, new)
            )

    categories = [
        DiffCategory(category, grouped[category]) for category in Category if category in grouped
    ]
    return CompareResult(
        name_a=a.name or UNNAMED,
        name_b=b.name or UNNAMED,
        categories=categories,
        total_fields=len(keys),
        changed_fields=changed,
    )


class CellFormat(StrEnum):
    """Builtin Excel cell formats."""

    NORMAL = "Normal"
    GOOD = "Good"
    BAD = "Bad"
    INPUT = "Input"
    NOTE = "Note"
    NEUTRAL = "Neutral"
    HEADING4 = "Headline 4"


class DiffType(Enum):
    """Difference types."""

    # No difference in values.
    NO_DIFF = 0
    # Reference value (the value differenced to!).
    REFERENCE = 1
    # Normal difference to reference value.
    DIFFERENCE = 2
    # Unset reference value.
    UNSET = 3
    # Too complex to diff (json objects).
    COMPLEX = 4


DIFF_FORMATS = {
    DiffType.NO_DIFF: CellFormat.NORMAL,
    DiffType.REFERENCE: CellFormat.INPUT,
    DiffType.DIFFERENCE: CellFormat.BAD,
    DiffType.UNSET: CellFormat.NEUTRAL,
    DiffType.COMPLEX: CellFormat.NOTE,
}


class CellInfo(NamedTuple):
    """Summary data for writing to an Excel cell."""

    row: int
    column: int
    value: str
    format: DiffType | CellFormat


class PresetColumn(NamedTuple):
    """Column header data for one preset in a DiffMatrix."""

    group: str
    filename: str
    name: str


class DiffValue(NamedTuple):
    """Container for difference value and difference type information."""

    value: str
    type: DiffType


class DiffValuePath(NamedTuple):
    """Unique key for a matrix value.

    Tuple keys avoid sparse nested dictionaries.
    """

    row_name: str
    column: PresetColumn


class DiffMatrix:
    """Difference data in a sparse matrix form.

    Rows are setting keys (sorted), columns are presets in the order they were first
    added. The first column is the reference.
    """

    _rows: dict[str, int]
    _cols: dict[PresetColumn, int]
    _values: dict[DiffValuePath, DiffValue]
    # Flag indicating indices need recalculating. Set to true every time a new
    # value is added.
    _reset_required: bool
    # Group, filename, preset name.
    _header_count: int = 3

    def __init__(self) -> None:
        """Create instance variables."""
        self._rows = {}
        self._cols = {}
        self._values = {}
        self._reset_required = True

    def column_exists(self, column: PresetColumn) -> bool:
        """Test if column is defined."""
        return column in self._cols

    def add_value(
        self, row_name: str, column: PresetColumn, value: str, value_type: DiffType
    ) -> None:
        """Add or overwrite a value in the diff matrix.

        Triggers an index reset, which invalidates any active table_cells iterator.
        """
        self._reset_required = True
        self._rows.setdefault(row_name, -1)
        self._cols.setdefault(column, -1)
        self._values[DiffValuePath(row_name, column)] = DiffValue(value, value_type)

    def add_column(self, column: PresetColumn) -> None:
        """Add an empty column, if it isn't already defined."""
        if column not in self._cols:
            self._reset_required = True
            self._cols[column] = -1

    def value(self, row_name: str, column: PresetColumn) -> DiffValue | None:
        return self._values.get(DiffValuePath(row_name, column))

    def _reset_lookups(self) -> None:
        """Prepare row and column lookup indices for writing tables (0 based)."""
        for i, key in enumerate(sorted(self._rows)):
            self._rows[key] = i
        # Dicts keep insertion order, which is the column order we want.
        for i, column in enumerate(self._cols):
            self._cols[column] = i
        self._reset_required = False

    def table_cells(self) -> Iterator[CellInfo]:
        """Generate table cells, row names and column headers.

        Row and column values are 0 based offsets. Column 0 holds the row names.
        """
        if self._reset_required:
            self._reset_lookups()

        yield CellInfo(0, 0, "Group", CellFormat.HEADING4)
        yield CellInfo(1, 0, "Filename", CellFormat.HEADING4)
        yield CellInfo(2, 0, "Preset", CellFormat.HEADING4)

        for row_name, row_offset in self._rows.items():
            yield CellInfo(row_offset + self._header_count, 0, row_name, CellFormat.NORMAL)

        for column, col_offset in self._cols.items():
            yield CellInfo(0, col_offset + 1, column.group, CellFormat.HEADING4)
            yield CellInfo(1, col_offset + 1, column.filename, CellFormat.HEADING4)
            yield CellInfo(2, col_offset + 1, column.name, CellFormat.HEADING4)

        for key, value in self._values.items():
            row = self._rows[key.row_name] + self._header_count
            col = self._cols[key.column] + 1
            yield CellInfo(row, col, value.value, value.type)

    def setting_count(self) -> int:
        """Number of setting rows, excluding headers."""
        return len(self._rows)

    def row_count(self) -> int:
        """Row count in the table including header lines."""
        return len(self._rows) + self._header_count

    def column_count(self) -> int:
        """Column count in the table including the row name column."""
        return len(self._cols) + 1


def _diff_type(reference: SettingValue | None, value: SettingValue | None) -> DiffType:
    if isinstance(value, dict) or isinstance(reference, dict):
        return DiffType.COMPLEX
    if reference is None:
        return DiffType.UNSET
    if display_value(reference) == display_value(value):
        return DiffType.NO_DIFF
    return DiffType.DIFFERENCE


def comparison_matrix(
    presets: list[tuple[PresetColumn, Preset]], show_identical: bool = False
) -> DiffMatrix:
    """Build a DiffMatrix from presets, the first being the reference.

    Unless show_identical is set, only rows where at least one preset differs from the
    reference are included.
    """
    matrix = DiffMatrix()
    if not presets:
        return matrix

    (ref_column, reference), others = presets[0], presets[1:]
    keys = set(reference.raw)
    for _, preset in others:
        keys |= set(preset.raw)

    for key in sorted(keys):
        ref_value = reference.get(key)
        values = [(column, preset.get(key)) for column, preset in others]
        diff_types = [_diff_type(ref_value, value) for _, value in values]
        if not show_identical and all(dt == DiffType.NO_DIFF for dt in diff_types):
            continue

        if ref_value is not None:
            matrix.add_value(key, ref_column, display_value(ref_value), DiffType.REFERENCE)
        for (column, value), diff_type in zip(values, diff_types):
            if value is not None:
                matrix.add_value(key, column, display_value(value), diff_type)

    # Every preset gets a column, even if it has no rows.
    for column, _ in presets:
        matrix.add_column(column)
    return matrix


def write_workbook(matrix: DiffMatrix, path: Path, title: str = "Preset differences") -> None:
    """Write matrix to an .xlsx file at path."""
    wb = Workbook()
    ws = wb.active
    ws.title = title

    for cell in matrix.table_cells():
        xl_cell = ws.cell(row=cell.row + 1, column=cell.column + 1, value=cell.value)
        fmt = DIFF_FORMATS[cell.format] if isinstance(cell.format, DiffType) else cell.format
        xl_cell.style = fmt.value

    ws.column_dimensions["A"].width = 40
    for col in range(2, matrix.column_count() + 1):
        ws.column_dimensions[get_column_letter(col)].width = 24
    # Keep the headers and setting names in view.
    ws.freeze_panes = "B4"

    try:
        wb.save(path)
    except OSError as err:
        raise PresetIOError("write", path, err) from err
    logger.info("Wrote comparison of %d presets to %s", matrix.column_count() - 1, path)
