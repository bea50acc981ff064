"""Command-line interface for tabcalc (sheet validation and evaluation)."""

from __future__ import annotations

import json
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from tabcalc import __core_api_version__, __version__
from tabcalc.config import EngineSettings, load_config
from tabcalc.engine import SheetEngine
from tabcalc.logging import configure_from
from tabcalc.sheet import Sheet, load_rows, load_sheet
from tabcalc.validation import Severity
from tabcalc.values import format_value


@click.group()
@click.version_option(
    version=f"{__version__} (core_api={__core_api_version__})",
    prog_name="tabcalc",
)
def main() -> None:
    """tabcalc -- dependency-aware formula engine for slot sheets.

    Columns are referenced as C<id>, variables as V<id>.
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _open(sheet_path: str, config_dir: str | None) -> tuple[Sheet, EngineSettings]:
    """Load the sheet and the config next to it (or in *config_dir*)."""
    path = Path(sheet_path)
    try:
        sheet = load_sheet(path)
    except (yaml.YAMLError, ValidationError) as e:
        raise click.ClickException(f"Cannot load sheet {path}: {e}")

    config = load_config(Path(config_dir) if config_dir else path.parent)
    configure_from(config)
    return sheet, EngineSettings.from_config(config)


def _echo_event_line(evt: dict) -> None:
    ts = evt.get("ts", "")
    lvl = evt.get("level", "").upper()
    etype = evt.get("event_type", "")
    msg = evt.get("message", "")
    err = evt.get("error_code")
    line = f"[{ts}] {lvl:7s} {etype}: {msg}"
    if err:
        line += f"  ({err})"
    click.echo(line)


_config_option = click.option(
    "--config-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Directory holding tabcalc.yaml (default: the sheet's directory).",
)


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------


@main.command()
@click.argument("sheet_path", type=click.Path(exists=True, dir_okay=False))
@_config_option
@click.option("--json", "as_json", is_flag=True, help="Output results as JSON.")
def validate(sheet_path: str, config_dir: str | None, as_json: bool) -> None:
    """Validate every column and variable of SHEET_PATH.

    Exits with status 1 when any slot has an error-level failure.
    """
    sheet, settings = _open(sheet_path, config_dir)
    engine = SheetEngine(sheet, settings=settings)
    results = engine.validate_all()

    if as_json:
        click.echo(json.dumps({ref: r.model_dump(mode="json") for ref, r in results.items()}, indent=2))
    else:
        for ref, result in results.items():
            if result.is_valid:
                click.echo(f"  OK    {ref}")
                continue
            label = "WARN" if result.severity == Severity.warning else "FAIL"
            click.echo(f"  {label:5s} {ref}: {result.message}")
            if result.detail:
                click.echo(f"        {result.detail}")
            if result.suggestion:
                click.echo(f"        -> {result.suggestion}")

    if any(not r.is_valid and r.severity != Severity.warning for r in results.values()):
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


@main.command()
@click.argument("sheet_path", type=click.Path(exists=True, dir_okay=False))
@_config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def order(sheet_path: str, config_dir: str | None, as_json: bool) -> None:
    """Show column and variable evaluation orders for SHEET_PATH."""
    sheet, settings = _open(sheet_path, config_dir)
    engine = SheetEngine(sheet, settings=settings)
    columns = engine.column_graph.schedule(sheet.column_ids)
    variables = engine.variable_graph.schedule(sheet.variable_ids)
    loop_columns, loop_variables = engine.loop_members()
    column_order = [i for i in columns.order if i not in loop_columns]
    variable_order = [i for i in variables.order if i not in loop_variables]
    excluded_columns = sorted(columns.excluded | loop_columns)
    excluded_variables = sorted(variables.excluded | loop_variables)

    if as_json:
        out = {
            "columns": [f"C{i}" for i in column_order],
            "variables": [f"V{i}" for i in variable_order],
            "excluded_columns": [f"C{i}" for i in excluded_columns],
            "excluded_variables": [f"V{i}" for i in excluded_variables],
        }
        click.echo(json.dumps(out, indent=2))
        return

    click.echo("Variables: " + (", ".join(f"V{i}" for i in variable_order) or "(none)"))
    click.echo("Columns:   " + (", ".join(f"C{i}" for i in column_order) or "(none)"))
    if excluded_variables or excluded_columns:
        excluded = [f"V{i}" for i in excluded_variables]
        excluded += [f"C{i}" for i in excluded_columns]
        click.echo("Excluded (dependency loop): " + ", ".join(excluded))


# ---------------------------------------------------------------------------
# Eval
# ---------------------------------------------------------------------------


@main.command("eval")
@click.argument("sheet_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--rows", "rows_path", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML file with rows (default: rows in the sheet).")
@_config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def eval_cmd(sheet_path: str, rows_path: str | None, config_dir: str | None, as_json: bool) -> None:
    """Evaluate SHEET_PATH and print variables and the row table."""
    sheet, settings = _open(sheet_path, config_dir)
    rows = None
    if rows_path:
        try:
            rows = load_rows(Path(rows_path))
        except (yaml.YAMLError, ValidationError) as e:
            raise click.ClickException(f"Cannot load rows {rows_path}: {e}")

    engine = SheetEngine(sheet, settings=settings)
    result = engine.evaluate_all(rows)

    if as_json:
        out = {
            "pass_id": result.pass_id,
            "variables": {f"V{k}": v for k, v in sorted(result.variables.items())},
            "rows": {
                key: {f"C{k}": v for k, v in sorted(values.items())}
                for key, values in result.rows.items()
            },
            "errors": {
                "columns": [e.model_dump(mode="json") for e in result.column_errors],
                "cells": [e.model_dump(mode="json") for e in result.cell_errors],
                "variables": [e.model_dump(mode="json") for e in result.variable_errors],
            },
        }
        click.echo(json.dumps(out, indent=2, default=str))
        return

    if result.variables:
        click.echo("Variables:")
        for variable in sheet.variables:
            error = engine.errors.get_variable_error(variable.variable_id)
            shown = error.placeholder if error else format_value(result.variable(variable.variable_id))
            click.echo(f"  {variable.reference:5s} {variable.display_name}: {shown}")

    if result.rows:
        click.echo("Rows:")
        click.echo(str(result.to_frame()))
        for error in result.cell_errors:
            click.echo(f"  {error.placeholder} C{error.column_id} row '{error.row_key}': {error.message}")
    for error in result.column_errors:
        click.echo(f"  {error.placeholder} C{error.column_id}: {error.message}")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@click.argument("log_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--slot", default=None, help="Filter by slot reference (e.g. C3).")
@click.option("--pass-id", default=None, help="Filter by evaluation pass ID.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    log_dir: str,
    level: str | None,
    event_type: str | None,
    slot: str | None,
    pass_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log in LOG_DIR."""
    from tabcalc.logging.sink import EventSink

    sink = EventSink(Path(log_dir))
    events = sink.read(level=level, event_type=event_type, slot=slot, pass_id=pass_id, limit=limit)
    if not events:
        click.echo("No events found.")
        return
    for evt in events:
        _echo_event_line(evt)


@main.command("pass-log")
@click.argument("log_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("pass_id")
def pass_log_cmd(log_dir: str, pass_id: str) -> None:
    """Show the event log of one evaluation pass."""
    from tabcalc.logging.sink import EventSink

    events = EventSink(Path(log_dir)).read_pass_log(pass_id)
    if not events:
        click.echo(f"No events found for pass {pass_id}.")
        return
    for evt in events:
        _echo_event_line(evt)


if __name__ == "__main__":
    main()
