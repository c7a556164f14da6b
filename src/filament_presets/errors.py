"""Exceptions raised by the preset engine.

Everything the engine raises on purpose derives from PresetError, so callers can
catch the lot in one place. The sub-groups follow how a caller is expected to react:
- NotFoundError: something named does not exist. Always recoverable.
- PresetParseError: a preset or .info file is malformed. Skipped during registry
scans, fatal when the caller asked for that specific file.
- InheritanceError: the inherits chain is broken (cycle or too deep). Fatal.
- PresetIOError: directory creation, copy or rename failed. The target file is
untouched.

HostRunningWarning is deliberately NOT a PresetError. It is a precondition the caller
can override with force=True.
"""
from pathlib import Path


class PresetError(Exception):
    """Base class for preset engine errors."""


class NotFoundError(PresetError):
    """A host installation, preset or backup could not be found."""


class HostNotFoundError(NotFoundError):
    """Bambu Studio configuration folder does not exist."""

    def __init__(self, probed: list[Path]) -> None:
        self.probed = probed
        locations = "\n  ".join(str(path) for path in probed) or "<none>"
        super().__init__(
            f"Bambu Studio configuration folder not found. Is Bambu Studio installed?"
            f"\n  Looked in:\n  {locations}"
        )


class PresetNotFoundError(NotFoundError):
    """Named preset (or preset file) does not exist."""

    def __init__(self, name: str, referenced_by: str = "") -> None:
        self.name = name
        self.referenced_by = referenced_by
        message = f"Preset not found: '{name}'"
        if referenced_by:
            message += f" (referenced by '{referenced_by}')"
        super().__init__(message)


class BackupNotFoundError(NotFoundError):
    """Backup file does not exist."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Backup file not found: {path}")


class PresetParseError(PresetError, ValueError):
    """Preset or metadata file content could not be parsed."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)


class InheritanceError(PresetError):
    """The inherits chain for a preset is malformed."""

    def __init__(self, message: str, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(f"{message}\n  Chain: {' -> '.join(chain)}")


class InheritanceCycleError(InheritanceError):
    """A preset name appears twice in an inherits chain."""


class InheritanceDepthError(InheritanceError):
    """The inherits chain is longer than the allowed maximum."""


class PresetIOError(PresetError, OSError):
    """Filesystem operation failed. The target file has not been modified."""

    def __init__(self, action: str, path: Path, cause: OSError) -> None:
        self.action = action
        self.path = path
        super().__init__(f"Failed to {action} '{path}': {cause}")


class ReadOnlyPresetError(PresetError):
    """Attempt to modify a system preset, which belongs to the host application."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Refusing to modify system preset '{path}'.")


class PresetExistsError(PresetError):
    """A new preset would overwrite an existing file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"A preset file already exists at '{path}'.")


class HostRunningWarning(UserWarning):
    """Bambu Studio is running and may overwrite the change on its next save."""

    def __init__(self, action: str = "write presets") -> None:
        super().__init__(
            f"Bambu Studio is running. It may overwrite changes from its in-memory"
            f" copy. Close it, or use force to {action} anyway."
        )
