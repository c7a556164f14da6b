"""Crash safe writes, backups and restores for preset files.

Every write goes to a temporary file in the same folder as the target and is then
renamed over the target. The rename is atomic on a single filesystem, so a reader
(Bambu Studio included) only ever sees the complete old file or the complete new
file. If anything fails before the rename, the target is untouched and at worst a
stray temporary file is left behind (safe to delete).

Backups are plain copies in a .backups folder beside the preset:
    /path/to/My PLA.json -> /path/to/.backups/My PLA_20260101_120000.json
"""
import logging
import os
import re
import shutil
import tempfile
import time
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path

from .errors import BackupNotFoundError, PresetIOError, PresetNotFoundError
from .model import (
    DEFAULT_ENCODING,
    PRESET_EXT,
    MetadataRecord,
    Preset,
    info_path_for,
    load_metadata,
    load_preset,
)

logger = logging.getLogger(__name__)

BACKUP_DIR = ".backups"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
TEMP_PREFIX = ".tmp_"
_BACKUP_STAMP = re.compile(r"(?P<stamp>\d{8}_\d{6})(?:_(?P<counter>\d+))?")


def _atomic_write_text(content: str, target: Path) -> None:
    """Write content to target via temp file + rename."""
    parent = target.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise PresetIOError("create folder", parent, err) from err

    try:
        fp = tempfile.NamedTemporaryFile(
            mode="w",
            encoding=DEFAULT_ENCODING,
            newline="",
            dir=parent,
            prefix=TEMP_PREFIX,
            suffix=target.suffix,
            delete=False,
        )
    except OSError as err:
        raise PresetIOError("create temporary file in", parent, err) from err

    temp_path = Path(fp.name)
    try:
        with fp:
            fp.write(content)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(temp_path, target)
    except OSError as err:
        # Target is still the old file. Tidy up if we can.
        with suppress(OSError):
            temp_path.unlink()
        raise PresetIOError("write", target, err) from err


def write_preset(preset: Preset, target: Path) -> None:
    """Atomically write preset json to target."""
    _atomic_write_text(preset.serialize(), target)
    logger.info("Wrote preset '%s' to %s", preset.name, target)


def write_metadata(record: MetadataRecord, target: Path) -> None:
    """Atomically write a .info file."""
    _atomic_write_text(record.to_text(), target)
    logger.info("Wrote preset metadata to %s", target)


def write_with_metadata(preset: Preset, json_path: Path, record: MetadataRecord) -> None:
    """Write preset json then its .info companion, both atomically.

    If the .info write fails the json has already been committed. The error still
    propagates so the caller knows the metadata is stale.
    """
    write_preset(preset, json_path)
    write_metadata(record, info_path_for(json_path))


def touch_metadata(json_path: Path, now: int | None = None) -> MetadataRecord | None:
    """Refresh updated_time in an existing .info companion.

    Bambu Studio uses updated_time to notice changed presets. Does nothing (returns
    None) if the preset has no companion file.
    """
    record = load_metadata(json_path)
    if record is None:
        return None
    record = record.touched(int(time.time()) if now is None else now)
    write_metadata(record, info_path_for(json_path))
    return record


def backup_dir_for(path: Path) -> Path:
    return path.parent / BACKUP_DIR


def backup(path: Path, now: datetime | None = None) -> Path:
    """Copy path into the .backups folder beside it and return the copy's path.

    Backups are named <stem>_<YYYYMMDD_HHMMSS>.json (UTC) so they sort by age. A
    second backup inside the same second gets a counter suffix rather than
    overwriting the first.
    """
    if not path.is_file():
        raise PresetNotFoundError(str(path))

    backup_dir = backup_dir_for(path)
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise PresetIOError("create folder", backup_dir, err) from err

    stamp = (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)
    backup_path = backup_dir / f"{path.stem}_{stamp}{PRESET_EXT}"
    counter = 1
    while backup_path.exists():
        counter += 1
        backup_path = backup_dir / f"{path.stem}_{stamp}_{counter}{PRESET_EXT}"

    try:
        shutil.copy2(path, backup_path)
    except OSError as err:
        raise PresetIOError("back up", path, err) from err

    logger.info("Created backup %s", backup_path)
    return backup_path


def list_backups(path: Path) -> list[Path]:
    """Return backups of the preset at path, oldest first."""
    backup_dir = backup_dir_for(path)
    if not backup_dir.is_dir():
        return []
    prefix = path.stem + "_"
    stamped: list[tuple[str, int, Path]] = []
    for item in backup_dir.glob("*" + PRESET_EXT):
        if not item.name.startswith(prefix):
            continue
        # The rest must be a timestamp. "My PLA" must not pick up "My PLA Pro" or
        # "My PLA_2".
        match = _BACKUP_STAMP.fullmatch(item.stem[len(prefix) :])
        if match is not None:
            stamped.append((match["stamp"], int(match["counter"] or 1), item))
    return [item for _, _, item in sorted(stamped)]


def restore(backup_path: Path, target: Path) -> Preset:
    """Atomically replace target with the content of backup_path.

    The backup is parsed first, so a corrupt backup never replaces a good preset.
    """
    if not backup_path.is_file():
        raise BackupNotFoundError(backup_path)

    preset = load_preset(backup_path)
    write_preset(preset, target)
    logger.info("Restored %s from %s", target, backup_path)
    return preset
