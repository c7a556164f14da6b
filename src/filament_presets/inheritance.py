"""Roll a preset's inherits chain up into a single, fully populated preset.

A preset file only holds the settings that differ from its parent (named in
"inherits"). The effective value of every setting comes from walking the chain up to
the root and then applying each level's settings from the root back down to the
leaf, so that the youngest definition wins.

Two wrinkles:
    - Identity fields (name, filament_id, ...) describe one specific preset, so they
    are never inherited. Only the leaf's own identity makes it into the result.
    - "nil" means "use the parent's value". A nil never replaces a real value from
    further up the chain. If nobody up the chain sets the value, the nil is kept so
    the caller can see it is unset.
"""
import logging
from copy import deepcopy
from typing import Final

from .errors import InheritanceCycleError, InheritanceDepthError, PresetNotFoundError
from .model import INHERITS, NIL, Preset, SettingsDict, SettingValue, is_nil
from .registry import PresetRegistry

logger = logging.getLogger(__name__)

MAX_INHERITANCE_DEPTH: Final = 10
INCLUDE = "include"

# Identity/metadata keys that belong to one preset only. Skipped for ancestors.
SKIP_INHERIT_FIELDS: Final = frozenset(
    {
        "name",
        "inherits",
        "type",
        "from",
        "filament_id",
        "setting_id",
        "description",
        "compatible_printers",
        "instantiation",
    }
)

UNNAMED = "<unnamed>"


def is_fully_flattened(preset: Preset) -> bool:
    """True if there is no inheritance to resolve (inherits missing or empty)."""
    return not preset.inherits


def ancestor_chain(
    preset: Preset,
    registry: PresetRegistry,
    max_depth: int = MAX_INHERITANCE_DEPTH,
) -> list[Preset]:
    """Return [preset, parent, grandparent, ..., root].

    Raises on a cycle, on a chain longer than max_depth, or on a missing parent. Never
    truncates.
    """
    chain = [preset]
    names = [preset.name or UNNAMED]
    visited = {preset.name} if preset.name else set()

    current = preset
    while parent_name := current.inherits:
        if parent_name in visited:
            raise InheritanceCycleError(
                f"Circular inheritance: '{parent_name}' appears twice",
                names + [parent_name],
            )
        if len(chain) >= max_depth:
            raise InheritanceDepthError(
                f"Inheritance chain for '{names[0]}' exceeds maximum depth of"
                f" {max_depth}",
                names + [parent_name],
            )

        parent = registry.get_by_name(parent_name)
        if parent is None:
            raise PresetNotFoundError(parent_name, referenced_by=current.name or UNNAMED)

        if INCLUDE in parent.raw:
            logger.debug(
                "Preset '%s' has an include field (not resolved): %s",
                parent_name,
                parent.raw[INCLUDE],
            )

        visited.add(parent_name)
        names.append(parent_name)
        chain.append(parent)
        current = parent

    return chain


def _merge_value(current: SettingValue | None, incoming: SettingValue) -> SettingValue:
    """Return the value of a setting after applying incoming over current."""
    if is_nil(incoming):
        # Never let "inherit" wipe out a real inherited value.
        if current is None or is_nil(current):
            return deepcopy(incoming)
        return current

    if (
        isinstance(incoming, list)
        and isinstance(current, list)
        and len(incoming) == len(current)
        and NIL in incoming
    ):
        # Per extruder override, e.g. ["nil", "225"]. Keep the parent value in the
        # nil slots.
        return [old if new == NIL else new for old, new in zip(current, incoming)]

    return deepcopy(incoming)


def _apply(working: SettingsDict, settings: SettingsDict, skip: frozenset[str]) -> None:
    for key, value in settings.items():
        if key in skip:
            continue
        working[key] = _merge_value(working.get(key), value)


def resolve(
    preset: Preset,
    registry: PresetRegistry,
    max_depth: int = MAX_INHERITANCE_DEPTH,
) -> Preset:
    """Return the effective (fully flattened) version of preset.

    The source presets are not modified. The result has inherits set to "" and keys in
    the order they first appear walking from the root to the leaf.
    """
    if INCLUDE in preset.raw:
        logger.debug(
            "Preset '%s' has an include field (not resolved): %s",
            preset.name or UNNAMED,
            preset.raw[INCLUDE],
        )

    chain = ancestor_chain(preset, registry, max_depth)

    # Walk back down from the root. The leaf goes last, identity included.
    working: SettingsDict = {}
    for ancestor in reversed(chain[1:]):
        _apply(working, ancestor.raw, SKIP_INHERIT_FIELDS)
    _apply(working, preset.raw, frozenset())
    working[INHERITS] = ""

    logger.debug(
        "Resolved '%s' through %d levels to %d fields",
        preset.name or UNNAMED,
        len(chain),
        len(working),
    )
    return Preset(working, source=preset.source)
