#!/usr/bin/env python3
# CFSv2 Forecast Rotator - CLI
# SPDX-License-Identifier: Apache-2.0

"""
Command-line interface for the forecast window rotator.

Usage:
    rotator update fm1000 vpd
    rotator update-all --config config/ecoregions.yaml
    rotator status fm1000

Exit status:
    0  every variable committed all three day-offsets
    3  degraded: every variable committed at least one offset
    1  at least one variable committed no offset
    2  configuration error
"""

import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from rotator import __version__
from rotator.config import RotatorSettings, discover_variables
from rotator.errors import ConfigurationError
from rotator.freshness import STALE_WARNING_FILE, forecast_start
from rotator.reporting import attach_log_file, configure_logging
from rotator.sources import DAY_OFFSETS
from rotator.variables import FormatKind, classify, validate_variable_id
from rotator.window import VariableReport, VariableStatus, WindowManager

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_DEGRADED = 3
EXIT_CANCELLED = 130


def exit_code(reports: list[VariableReport]) -> int:
    """Collapse per-variable statuses into one process exit status"""
    statuses = {r.status for r in reports}
    if not reports or VariableStatus.FAILED in statuses:
        return EXIT_FAILED
    if VariableStatus.DEGRADED in statuses:
        return EXIT_DEGRADED
    return EXIT_OK


def tuning_options(func):
    """Options shared by update and update-all"""
    options = [
        click.option("--data-dir", type=Path, help="Forecast window root (default: ./data/forecasts)"),
        click.option("--log-dir", type=Path, help="Per-variable log directory (default: ./log)"),
        click.option("--max-workers", type=int, help="Parallel downloads per cycle (default: 8)"),
        click.option("--max-concurrent", type=int, help="Parallel day-offset cycles (default: 3)"),
        click.option("--max-attempts", type=int, help="Download attempts per file (default: 3)"),
        click.option("--timeout", type=float, help="Per-request timeout in seconds (default: 60)"),
        click.option("--no-freshness", is_flag=True, help="Skip the stale-forecast check for day 0"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_settings(
    data_dir: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    max_workers: Optional[int] = None,
    max_concurrent: Optional[int] = None,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    no_freshness: bool = False,
) -> RotatorSettings:
    """Environment settings with command-line overrides applied"""
    overrides = {
        "data_dir": data_dir,
        "log_dir": log_dir,
        "fetch_workers": max_workers,
        "max_concurrent_cycles": max_concurrent,
        "max_attempts": max_attempts,
        "request_timeout": timeout,
    }
    if no_freshness:
        overrides["check_freshness"] = False
    return RotatorSettings(**{k: v for k, v in overrides.items() if v is not None})


def run_update(settings: RotatorSettings, variables: list[str]) -> int:
    configure_logging(settings.log_level)

    manager = None
    try:
        for variable in variables:
            validate_variable_id(variable)
            attach_log_file(variable, settings.log_dir)
        manager = WindowManager(settings)
        reports = manager.update_all(variables)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/]")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        if manager is not None:
            manager.cancel()
        console.print("[yellow]Cancelled - previous outputs left in place[/]")
        return EXIT_CANCELLED

    print_summary(reports)
    return exit_code(reports)


def print_summary(reports: list[VariableReport]):
    table = Table(title="Download Summary")
    table.add_column("Variable", style="cyan")
    table.add_column("Format")
    for offset in DAY_OFFSETS:
        table.add_column(f"Day {offset}")
    table.add_column("Status")

    colors = {
        VariableStatus.OK: "green",
        VariableStatus.DEGRADED: "yellow",
        VariableStatus.FAILED: "red",
    }

    for report in reports:
        cells = []
        for cycle in sorted(report.cycles, key=lambda c: c.day_offset):
            if cycle.committed:
                note = f"{cycle.members_used} member(s)" if report.kind == FormatKind.ENSEMBLE else "ok"
                if cycle.stale:
                    note += " (stale)"
                cells.append(f"[green]{note}[/]")
            else:
                cells.append(f"[red]{type(cycle.error).__name__ if cycle.error else 'failed'}[/]")
        color = colors[report.status]
        table.add_row(
            report.variable,
            report.kind.value,
            *cells,
            f"[{color}]{report.status.value.upper()}[/]",
        )

    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="rotator")
def main():
    """
    CFSv2 Forecast Rotator

    Keeps a three-day window of gridMET CFSv2 forecast files per variable,
    averaging ensemble members where the archive does not publish a merged file.
    """
    pass


@main.command()
@click.argument("variables", nargs=-1, required=True)
@tuning_options
def update(variables, **options):
    """
    Refresh day-offsets 0, 1 and 2 for each VARIABLE.

    Example: rotator update fm1000 vpd
    """
    try:
        settings = build_settings(**options)
    except (ValidationError, ConfigurationError) as e:
        console.print(f"[red]Configuration error: {e}[/]")
        sys.exit(EXIT_CONFIG)

    sys.exit(run_update(settings, list(variables)))


@main.command("update-all")
@click.option("--config", "config_path", type=Path, default=Path("config/ecoregions.yaml"),
              help="Ecoregion config listing required variables")
@tuning_options
def update_all(config_path: Path, **options):
    """
    Refresh every variable required by enabled ecoregions.

    gdd_0 is expanded to tmmx and tmmn, which are committed together.
    """
    try:
        settings = build_settings(**options)
        variables = discover_variables(config_path)
    except (ValidationError, ConfigurationError) as e:
        console.print(f"[red]Configuration error: {e}[/]")
        sys.exit(EXIT_CONFIG)

    console.print(f"[dim]Required forecast variables:[/] {' '.join(variables)}")
    sys.exit(run_update(settings, variables))


@main.command()
@click.argument("variables", nargs=-1, required=True)
@click.option("--data-dir", type=Path, help="Forecast window root (default: ./data/forecasts)")
def status(variables, data_dir: Optional[Path]):
    """
    Show the files currently in the window for each VARIABLE.
    """
    try:
        settings = build_settings(data_dir=data_dir)
        for variable in variables:
            validate_variable_id(variable)
    except (ValidationError, ConfigurationError) as e:
        console.print(f"[red]Configuration error: {e}[/]")
        sys.exit(EXIT_CONFIG)

    policy = settings.format_policy()
    table = Table(title="Forecast Window")
    table.add_column("Variable", style="cyan")
    table.add_column("Format")
    table.add_column("Day", justify="right")
    table.add_column("File")
    table.add_column("Size", justify="right", style="green")
    table.add_column("Starts")

    for variable in variables:
        stale = (settings.variable_dir(variable) / STALE_WARNING_FILE).exists()
        for offset in DAY_OFFSETS:
            path = settings.output_path(variable, offset)
            if path.exists():
                start = forecast_start(path, settings.time_dim)
                starts = str(start) if start else "unknown"
                if offset == 0 and stale:
                    starts += " [yellow](stale)[/]"
                size = f"{path.stat().st_size / 1024:.1f} KB"
            else:
                starts, size = "-", "[red]missing[/]"
            table.add_row(variable, classify(variable, policy).value, str(offset), path.name, size, starts)

    console.print(table)


if __name__ == "__main__":
    main()
