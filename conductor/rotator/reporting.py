# CFSv2 Forecast Rotator - Reporter
# SPDX-License-Identifier: Apache-2.0

"""
Operator-facing event log.

One timestamped line per event, namespaced by variable through a
`rotator.<variable>` logger, e.g.

    2026-10-19 17:12:03,114 - rotator.fm1000 - WARNING - Day 0: failed to download 06_3_0 (HTTP 404)

Each variable's lines are also appended to <log_dir>/<variable>_forecast.log.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from rotator.variables import FormatKind

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO", stream=None):
    """Install the console handler on the root logger"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(stream or sys.stdout)],
        force=True,
    )


def variable_logger(variable: str) -> logging.Logger:
    return logging.getLogger(f"rotator.{variable}")


def attach_log_file(variable: str, log_dir: Path) -> logging.Handler:
    """Append this variable's events to <log_dir>/<variable>_forecast.log"""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{variable}_forecast.log"
    logger = variable_logger(variable)

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file.absolute():
            return handler

    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return handler


class Reporter:
    """Records the outcome of each acquisition step for one variable"""

    def __init__(self, variable: str, logger: Optional[logging.Logger] = None):
        self.variable = variable
        self.logger = logger or variable_logger(variable)

    def classified(self, kind):
        if kind == FormatKind.ENSEMBLE:
            self.logger.info(f"Variable {self.variable} uses ensemble format - will compute ensemble means")
        else:
            self.logger.info(f"Variable {self.variable} uses aggregated format")

    def offset_started(self, day_offset: int, n_sources: int):
        self.logger.info(f"Day {day_offset}: downloading {n_sources} source file(s)")

    def source_missing(self, day_offset: int, label: str, reason: str):
        self.logger.warning(f"Day {day_offset}: failed to download {label} ({reason})")

    def fetch_summary(self, day_offset: int, succeeded: int, total: int):
        if succeeded == total:
            self.logger.info(f"Day {day_offset}: downloaded all {total} source file(s)")
        else:
            self.logger.warning(f"Day {day_offset}: downloaded {succeeded} of {total} source files")

    def aggregated(self, day_offset: int, k: int):
        self.logger.info(f"Day {day_offset}: computed ensemble mean from {k} members")

    def committed(self, day_offset: int, path: Path, changed: bool):
        if changed:
            self.logger.info(f"Day {day_offset}: committed {path.name}")
        else:
            self.logger.info(f"Day {day_offset}: committed {path.name} (no update detected, content unchanged)")

    def offset_failed(self, day_offset: int, error: Exception):
        self.logger.error(f"Day {day_offset}: {type(error).__name__}: {error} - keeping previous output")

    def stale(self, day_offset: int, message: str):
        self.logger.warning(f"Day {day_offset}: {message}")

    def stale_cleared(self):
        self.logger.info("Cleared previous stale data warning - forecast is now current")

    def final(self, status, committed: list[int], failed: list[int]):
        line = (
            f"Final status {status.value.upper()}: "
            f"committed offsets {committed or 'none'}, failed offsets {failed or 'none'}"
        )
        if status.value == "ok":
            self.logger.info(line)
        elif status.value == "degraded":
            self.logger.warning(line)
        else:
            self.logger.error(line)
