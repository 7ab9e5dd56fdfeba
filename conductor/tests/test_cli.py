# CFSv2 Forecast Rotator - CLI Tests
# SPDX-License-Identifier: Apache-2.0

"""
Tests for the rotator command line: exit codes, summary and status tables.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from rotator.cli import (
    EXIT_CANCELLED,
    EXIT_CONFIG,
    EXIT_DEGRADED,
    EXIT_FAILED,
    EXIT_OK,
    exit_code,
    main,
    print_summary,
)
from rotator.fetcher import Fetcher
from rotator.variables import FormatKind
from rotator.window import CycleResult, CycleState, VariableReport, WindowManager


def _report(variable, committed):
    cycles = [
        CycleResult(variable, offset, FormatKind.ENSEMBLE,
                    state=CycleState.COMMITTED if offset in committed else CycleState.FAILED)
        for offset in (0, 1, 2)
    ]
    return VariableReport(variable, FormatKind.ENSEMBLE, cycles)


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch, settings):
    """Route the CLI at the fake archive and keep its handlers out of other tests"""
    monkeypatch.setenv("ROTATOR_BASE_URL", settings.base_url)
    monkeypatch.setenv("ROTATOR_BACKOFF_MIN", "0")
    monkeypatch.setenv("ROTATOR_BACKOFF_MAX", "0")
    monkeypatch.setenv("ROTATOR_MAX_ATTEMPTS", "1")

    with patch("rotator.cli.configure_logging"), patch("rotator.cli.console", Console(width=200)):
        yield

    for name in list(logging.root.manager.loggerDict):
        if name.startswith("rotator."):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    logger.removeHandler(handler)
                    handler.close()


@pytest.fixture
def run(archive, tmp_path):
    """Invoke the CLI with managers wired to the fake archive"""
    def build(settings):
        return WindowManager(settings, fetcher=Fetcher.from_settings(settings, session=archive.session))

    def _run(*args):
        dirs = ["--data-dir", str(tmp_path / "forecasts")]
        if args[0] != "status":
            dirs += ["--log-dir", str(tmp_path / "log"), "--no-freshness"]
        with patch("rotator.cli.WindowManager", side_effect=build):
            return CliRunner().invoke(main, [*args, *dirs])
    return _run


class TestExitCode:

    def test_all_ok(self):
        assert exit_code([_report("fm1000", {0, 1, 2}), _report("vpd", {0, 1, 2})]) == EXIT_OK

    def test_degraded(self):
        assert exit_code([_report("fm1000", {0, 1, 2}), _report("vpd", {1, 2})]) == EXIT_DEGRADED

    def test_any_variable_failed(self):
        assert exit_code([_report("fm1000", {0, 1, 2}), _report("vpd", set())]) == EXIT_FAILED

    def test_nothing_run(self):
        assert exit_code([]) == EXIT_FAILED


class TestUpdate:

    def test_success(self, run, archive, tmp_path):
        for offset in (0, 1, 2):
            archive.publish_aggregated("vpd", offset)

        result = run("update", "vpd")

        assert result.exit_code == EXIT_OK
        assert "Download Summary" in result.output
        assert "OK" in result.output
        assert (tmp_path / "forecasts" / "vpd" / "cfsv2_metdata_forecast_vpd_daily_2.nc").exists()
        assert (tmp_path / "log" / "vpd_forecast.log").exists()

    def test_degraded(self, run, archive):
        archive.publish_aggregated("vpd", 1)
        archive.publish_aggregated("vpd", 2)

        result = run("update", "vpd")

        assert result.exit_code == EXIT_DEGRADED
        assert "NoDataAvailable" in result.output

    def test_failed(self, run):
        result = run("update", "fm1000")

        assert result.exit_code == EXIT_FAILED

    def test_invalid_variable(self, run, archive):
        result = run("update", "vpd", "Bad-Name")

        assert result.exit_code == EXIT_CONFIG
        assert "Configuration error" in result.output
        assert archive.session.calls == []

    def test_invalid_option(self, run):
        result = CliRunner().invoke(main, ["update", "vpd", "--max-attempts", "0"])

        assert result.exit_code == EXIT_CONFIG

    def test_interrupted(self, tmp_path):
        manager = MagicMock()
        manager.update_all.side_effect = KeyboardInterrupt

        with patch("rotator.cli.WindowManager", return_value=manager):
            result = CliRunner().invoke(main, ["update", "vpd", "--log-dir", str(tmp_path)])

        assert result.exit_code == EXIT_CANCELLED
        manager.cancel.assert_called_once()


class TestUpdateAll:

    def test_discovers_variables(self, run, archive, tmp_path):
        config = tmp_path / "ecoregions.yaml"
        config.write_text(yaml.safe_dump({"ecoregions": [
            {"name": "southern_rockies", "enabled": True, "cover_types": {"shrub": {"gridmet_varname": "vpd"}}},
        ]}))
        for offset in (0, 1, 2):
            archive.publish_aggregated("vpd", offset)

        result = run("update-all", "--config", str(config))

        assert result.exit_code == EXIT_OK
        assert "Required forecast variables: vpd" in result.output

    def test_missing_config(self, run, tmp_path):
        result = run("update-all", "--config", str(tmp_path / "missing.yaml"))

        assert result.exit_code == EXIT_CONFIG

    def test_update_all_with_list_config(self, run, tmp_path):
        config = tmp_path / "ecoregions.yaml"
        config.write_text(yaml.safe_dump(["fm1000", "vpd"]))

        result = run("update-all", "--config", str(config))

        assert result.exit_code == EXIT_CONFIG
        assert "Configuration error" in result.output


class TestStatus:

    def test_lists_window(self, run, archive):
        for offset in (0, 1):
            archive.publish_aggregated("vpd", offset, start="2026-10-19")
        run("update", "vpd")

        result = run("status", "vpd")

        assert result.exit_code == 0
        assert "Forecast Window" in result.output
        assert "cfsv2_metdata_forecast_vpd_daily_0.nc" in result.output
        assert "2026-10-19" in result.output
        assert "missing" in result.output


class TestSummary:

    def test_single_member_ensemble_shows_count(self, capsys):
        cycles = [
            CycleResult("fm1000", offset, FormatKind.ENSEMBLE, state=CycleState.COMMITTED, members_used=1)
            for offset in (0, 1, 2)
        ]

        print_summary([VariableReport("fm1000", FormatKind.ENSEMBLE, cycles)])

        assert capsys.readouterr().out.count("1 member(s)") == 3

    def test_aggregated_shows_ok(self, capsys):
        cycles = [
            CycleResult("vpd", offset, FormatKind.AGGREGATED, state=CycleState.COMMITTED, members_used=1)
            for offset in (0, 1, 2)
        ]

        print_summary([VariableReport("vpd", FormatKind.AGGREGATED, cycles)])

        out = capsys.readouterr().out
        assert "member(s)" not in out
        assert "ok" in out
