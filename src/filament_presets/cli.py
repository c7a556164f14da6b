"""Command line interface for the filament preset engine.

Quick reference:
    filament-presets list                     all presets Bambu Studio can see
    filament-presets show <file> --resolved   effective settings of a preset
    filament-presets generate spec.json       preview a preset built from a spec
    filament-presets generate spec.json --install
    filament-presets compare a.json b.json --xlsx diff.xlsx

Exit codes: 0 success, 1 error, 2 Bambu Studio is running (re-run with --force to
write anyway).
"""
import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .diff import write_workbook
from .engine import DraftResult, PresetEngine
from .errors import HostRunningWarning, PresetError, PresetParseError
from .generator import FilamentSpec
from .model import DEFAULT_ENCODING, SettingValue
from .settings import load_settings

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help=(
        "Inspect, generate and maintain Bambu Studio filament presets.\n\n"
        "\b\nNotes:\n"
        "  • Settings are read from settings.toml in the user config folder (see --config).\n"
        "  • Writes are refused while Bambu Studio is running unless --force is given.\n"
        "  • Every overwrite is preceded by a backup in the preset's .backups folder."
    ),
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(verbose: int = 0) -> None:
    """Send log records to stderr via rich. WARNING by default, -v INFO, -vv DEBUG."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    level = logging.WARNING if verbose == 0 else (logging.INFO if verbose == 1 else logging.DEBUG)
    handler = RichHandler(
        console=Console(file=sys.stderr),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    root.setLevel(level)
    root.addHandler(handler)


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn engine errors into a message and an exit code."""
    try:
        yield
    except HostRunningWarning as warning:
        err_console.print(f"[bold yellow]Warning:[/bold yellow] {warning}")
        raise typer.Exit(code=2) from warning
    except PresetError as err:
        err_console.print(f"[bold red]Error:[/bold red] {err}")
        raise typer.Exit(code=1) from err


def _engine(ctx: typer.Context) -> PresetEngine:
    return PresetEngine.detect(ctx.obj)


def _load_spec(path: Path) -> FilamentSpec:
    try:
        data = json.loads(path.read_text(encoding=DEFAULT_ENCODING))
    except OSError as err:
        raise PresetParseError(f"could not read spec file ({err})", path) from err
    except json.JSONDecodeError as err:
        raise PresetParseError(f"invalid json ({err})", path) from err
    if not isinstance(data, dict):
        raise PresetParseError("expected a json object", path)
    return FilamentSpec.from_dict(data)


def _parse_value(text: str) -> SettingValue:
    """Values are json if they parse as json (e.g. '["220", "220"]'), else plain text."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


@app.callback()
def _root(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More logs (repeatable)."),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file (TOML)."),
    appdata: Optional[Path] = typer.Option(
        None, "--appdata", help="Bambu Studio config folder (default: detect)."
    ),
    preset_folder: Optional[str] = typer.Option(
        None, "--preset-folder", help="User preset folder id (default: from BambuStudio.conf)."
    ),
):
    """Global options."""
    configure_logging(verbose)
    with _reported_errors():
        settings = load_settings(config)
    if appdata is not None:
        settings = settings._replace(appdata_path=appdata)
    if preset_folder is not None:
        settings = settings._replace(preset_folder=preset_folder)
    ctx.obj = settings


@app.command("list", help="List filament presets (system and user).")
def list_(
    ctx: typer.Context,
    user_only: bool = typer.Option(False, "--user-only", help="Only list user presets."),
):
    with _reported_errors():
        summaries = _engine(ctx).list_presets(include_system=not user_only)

    table = Table(title=f"{len(summaries)} filament presets")
    table.add_column("Name")
    table.add_column("Group")
    table.add_column("Type")
    table.add_column("Filament id")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.group.value,
            summary.filament_type or "",
            summary.filament_id or "",
        )
    console.print(table)


@app.command(help="Print a preset as json (optionally fully resolved) and its .info.")
def show(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Preset json file."),
    resolved: bool = typer.Option(False, "--resolved", help="Flatten the inherits chain."),
):
    with _reported_errors():
        engine = _engine(ctx)
        preset = engine.read_preset(path)
        if resolved:
            preset = engine.resolve_preset(preset)
        metadata = engine.read_metadata(path)

    typer.echo(preset.serialize(), nl=False)
    if metadata is not None:
        typer.echo(metadata.to_text(), nl=False)


def _print_draft(result: DraftResult) -> None:
    preset = result.draft.preset
    console.print(f"[bold]{preset.name}[/bold]")
    console.print(f"  Base preset: {result.base_name}")
    console.print(f"  Fields: {result.field_count}")
    console.print(f"  File: {result.draft.filename}")

    if result.diffs:
        table = Table(title="Changes from base preset")
        table.add_column("Setting")
        table.add_column("Base")
        table.add_column("New")
        for diff in result.diffs:
            table.add_row(diff.label, diff.old, diff.new)
        console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command(help="Generate a preset from a json spec file. Preview only unless --install.")
def generate(
    ctx: typer.Context,
    spec_file: Path = typer.Argument(..., help="Filament spec (json object)."),
    base: Optional[str] = typer.Option(None, "--base", help="Base preset name (default: by material)."),
    printer: Optional[str] = typer.Option(None, "--printer", help="Target printer suffix."),
    install: bool = typer.Option(False, "--install", help="Write the preset to the user folder."),
    force: bool = typer.Option(False, "--force", help="Write even if Bambu Studio is running."),
    show_json: bool = typer.Option(False, "--json", help="Print the generated json."),
):
    with _reported_errors():
        spec = _load_spec(spec_file)
        engine = _engine(ctx)
        result = engine.generate_preview(spec, base_name=base, target_printer=printer)
        _print_draft(result)
        if show_json:
            typer.echo(result.preview, nl=False)
        if install:
            installed = engine.install(result.draft, force=force)
            console.print(f"Installed '{installed.name}' to {installed.path}")
            if installed.backup_path is not None:
                console.print(f"Previous version backed up to {installed.backup_path}")
            if installed.host_was_running:
                console.print("Restart Bambu Studio for the change to take effect.")


@app.command(help="Back up a preset, or list its backups.")
def backup(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Preset json file."),
    list_only: bool = typer.Option(False, "--list", help="List existing backups instead."),
):
    with _reported_errors():
        engine = _engine(ctx)
        if list_only:
            for backup_path in engine.list_backups(path):
                typer.echo(str(backup_path))
            return
        backup_path = engine.backup(path)
    console.print(f"Backed up to {backup_path}")


@app.command(help="Replace a preset with one of its backups.")
def restore(
    ctx: typer.Context,
    backup_path: Path = typer.Argument(..., help="Backup file."),
    path: Path = typer.Argument(..., help="Preset json file to replace."),
    force: bool = typer.Option(False, "--force", help="Write even if Bambu Studio is running."),
):
    with _reported_errors():
        preset = _engine(ctx).restore(backup_path, path, force=force)
    console.print(f"Restored '{preset.name}' from {backup_path}")


@app.command("set", help="Set one field of a user preset. VALUE is parsed as json if possible.")
def set_(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Preset json file."),
    key: str = typer.Argument(...),
    value: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", help="Write even if Bambu Studio is running."),
):
    with _reported_errors():
        _engine(ctx).update_field(path, key, _parse_value(value), force=force)
    console.print(f"Updated {key} in {path}")


@app.command(help="Copy a preset into the user folder under a new name.")
def duplicate(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Preset json file."),
    new_name: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", help="Write even if Bambu Studio is running."),
):
    with _reported_errors():
        result = _engine(ctx).duplicate(path, new_name, force=force)
    console.print(f"Created '{result.name}' at {result.path}")


@app.command(help="Compare presets. Two presets print a table, --xlsx takes two or more.")
def compare(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Preset json files, the first is the reference."),
    show_all: bool = typer.Option(False, "--all", help="Include identical settings."),
    resolved: bool = typer.Option(False, "--resolved", help="Compare effective settings (xlsx only)."),
    xlsx: Optional[Path] = typer.Option(None, "--xlsx", help="Write an Excel comparison here."),
):
    if len(paths) < 2 or (xlsx is None and len(paths) != 2):
        err_console.print("[bold red]Error:[/bold red] compare needs two presets (or two or more with --xlsx).")
        raise typer.Exit(code=1)

    with _reported_errors():
        engine = _engine(ctx)
        if xlsx is not None:
            matrix = engine.comparison_matrix(paths, resolved=resolved, show_identical=show_all)
            write_workbook(matrix, xlsx)
            console.print(f"Wrote {matrix.setting_count()} settings to {xlsx}")
            return
        result = engine.compare(paths[0], paths[1], show_identical=show_all)

    table = Table(title=f"{result.name_a} vs {result.name_b}")
    table.add_column("Category")
    table.add_column("Setting")
    table.add_column(result.name_a)
    table.add_column(result.name_b)
    for category in result.categories:
        for diff in category.diffs:
            table.add_row(category.category.value, diff.label, diff.old, diff.new)
    console.print(table)
    console.print(f"{result.changed_fields} of {result.total_fields} settings differ.")


def main() -> None:
    app()
