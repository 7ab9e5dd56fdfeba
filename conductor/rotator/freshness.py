# CFSv2 Forecast Rotator - Forecast Freshness
# SPDX-License-Identifier: Apache-2.0

"""
Stale-forecast detection for day-offset 0.

The archive normally publishes the new CFSv2 run around 17:00 UTC. Until
then the "today" files still start on a previous date. Before the cutoff hour
a stale file is rejected so the next scheduled invocation can pick up the
fresh run; after the cutoff it is accepted and flagged with a warning file
next to the outputs.
"""

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional

import numpy as np
import xarray as xr

logger = logging.getLogger(__name__)

STALE_WARNING_FILE = "STALE_DATA_WARNING.txt"


def forecast_start(path: Path, time_dim: str = "day") -> Optional[date]:
    """First date on the time dimension, or None if it cannot be determined"""
    try:
        with xr.open_dataset(path) as ds:
            if time_dim not in ds.coords or ds.sizes[time_dim] == 0:
                return None
            first = ds[time_dim].values[0]
    except (OSError, ValueError, RuntimeError) as e:
        logger.warning(f"Could not read '{time_dim}' from {path.name}: {e}")
        return None

    if isinstance(first, np.datetime64):
        return first.astype("datetime64[D]").item()
    # cftime calendars
    if all(hasattr(first, attr) for attr in ("year", "month", "day")):
        return date(first.year, first.month, first.day)
    return None


def is_current(start: date, today: date) -> bool:
    """A forecast is current if it starts today or tomorrow"""
    return start in (today, today + timedelta(days=1))


def past_cutoff(now: datetime, cutoff_hour: int) -> bool:
    return now.hour >= cutoff_hour


def write_stale_warning(variable_dir: Path, variable: str, start: Optional[date], now: datetime) -> Path:
    """Leave a marker next to the outputs explaining that stale data is in use"""
    today = now.date()
    warning = variable_dir / STALE_WARNING_FILE
    variable_dir.mkdir(parents=True, exist_ok=True)
    warning.write_text(
        "STALE FORECAST DATA WARNING\n"
        "===========================\n"
        f"Variable: {variable}\n"
        f"Generated: {now.isoformat(timespec='seconds')}\n"
        f"Expected forecast date: {today} or {today + timedelta(days=1)}\n"
        f"Actual forecast date: {start or 'unknown'}\n"
        "\n"
        "The upstream data provider (gridMET/CFSv2) has not published today's forecast.\n"
        "This window is using the previous day's forecast data.\n"
    )
    return warning


def clear_stale_warning(variable_dir: Path) -> bool:
    """Remove the stale marker; returns True if one was present"""
    warning = variable_dir / STALE_WARNING_FILE
    if warning.exists():
        warning.unlink()
        return True
    return False
