"""Check whether Bambu Studio is running.

Bambu Studio keeps its presets in memory and writes them back on exit (and on
various other occasions), so changes made to preset files while it is running are
likely to be lost.

Only program names are matched, never the other command line arguments. The config
folder is called BambuStudio on every platform, so any process with that path in
its arguments (this one included) would otherwise look like Bambu Studio.
"""
import logging
import os
from pathlib import Path
from typing import Any, Iterable

import psutil

logger = logging.getLogger(__name__)

# Matched case insensitively against program names.
HOST_PROCESS_NAMES = ("bambustudio", "bambu-studio", "bambu studio")


def _program_names(info: dict[str, Any]) -> list[str]:
    """Process name plus the file names of its executable and argv[0]."""
    names = [info.get("name") or ""]
    if info.get("exe"):
        names.append(Path(info["exe"]).name)
    cmdline = info.get("cmdline")
    if cmdline:
        names.append(Path(cmdline[0]).name)
    return [name.lower() for name in names if name]


def is_host_running(names: Iterable[str] = HOST_PROCESS_NAMES) -> bool:
    """True if any other process looks like Bambu Studio."""
    markers = tuple(name.lower() for name in names)
    # Ourselves and the shell (or launcher) that started us.
    own_pids = {os.getpid(), os.getppid()}
    for proc in psutil.process_iter(["name", "exe", "cmdline"]):
        if proc.pid in own_pids:
            continue
        try:
            program_names = _program_names(proc.info)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if any(marker in name for name in program_names for marker in markers):
            logger.debug("Bambu Studio process found: pid=%s names=%s", proc.pid, program_names)
            return True
    return False
