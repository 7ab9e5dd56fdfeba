# CFSv2 Forecast Rotator - Source Enumerator
# SPDX-License-Identifier: Apache-2.0

"""
Remote file layout of the gridMET CFSv2 90-day forecast archive.

Example ensemble member URL:
http://thredds.northwestknowledge.net:8080/thredds/fileServer/NWCSC_INTEGRATED_SCENARIOS_ALL_CLIMATE/cfsv2_metdata_90day/cfsv2_metdata_forecast_fm1000_daily_06_3_0.nc
"""

from dataclasses import dataclass
from itertools import product
from typing import Optional

from rotator.variables import FormatKind


BASE_URL = (
    "http://thredds.northwestknowledge.net:8080/thredds/fileServer/"
    "NWCSC_INTEGRATED_SCENARIOS_ALL_CLIMATE/cfsv2_metdata_90day"
)

ENSEMBLE_TEMPLATE = "cfsv2_metdata_forecast_{variable}_daily_{hour}_{member}_{day_offset}.nc"
# Upstream has also served a single multi-day `cfsv2_metdata_forecast_vpd_daily.nc`;
# override with ROTATOR_AGGREGATED_TEMPLATE if the per-offset name returns 404.
AGGREGATED_TEMPLATE = "cfsv2_metdata_forecast_{variable}_daily_{day_offset}.nc"

ISSUANCE_HOURS = ("00", "06", "12", "18")
MEMBERS = (1, 2, 3, 4)
DAY_OFFSETS = (0, 1, 2)


@dataclass(frozen=True)
class SourceDescriptor:
    """One remote file to fetch"""

    variable: str
    day_offset: int
    filename: str
    url: str
    hour: Optional[str] = None    # Issuance hour (ensemble only)
    member: Optional[int] = None  # Ensemble member (ensemble only)

    @property
    def is_member(self) -> bool:
        return self.hour is not None

    @property
    def label(self) -> str:
        """Short identifier used in log lines, e.g. '06_3_0'"""
        if self.is_member:
            return f"{self.hour}_{self.member}_{self.day_offset}"
        return f"{self.variable}_{self.day_offset}"


def enumerate_sources(
    variable: str,
    day_offset: int,
    kind: FormatKind,
    base_url: str = BASE_URL,
    ensemble_template: str = ENSEMBLE_TEMPLATE,
    aggregated_template: str = AGGREGATED_TEMPLATE,
    hours: tuple[str, ...] = ISSUANCE_HOURS,
    members: tuple[int, ...] = MEMBERS,
) -> tuple[SourceDescriptor, ...]:
    """
    Build the descriptors to fetch for one (variable, day-offset).

    Pure path construction, no network access.

    Args:
        variable: Variable identifier (e.g. "fm1000")
        day_offset: 0 (today), 1 (yesterday) or 2 (two days prior)
        kind: Publication format from classify()
        base_url: Archive root, without trailing slash

    Returns:
        One descriptor for aggregated variables, hours x members otherwise
    """
    if day_offset not in DAY_OFFSETS:
        raise ValueError(f"Day offset must be one of {DAY_OFFSETS}, got {day_offset}")

    root = base_url.rstrip("/")

    if kind == FormatKind.AGGREGATED:
        filename = aggregated_template.format(variable=variable, day_offset=day_offset)
        return (
            SourceDescriptor(
                variable=variable,
                day_offset=day_offset,
                filename=filename,
                url=f"{root}/{filename}",
            ),
        )

    descriptors = []
    for hour, member in product(hours, members):
        filename = ensemble_template.format(
            variable=variable, hour=hour, member=member, day_offset=day_offset
        )
        descriptors.append(
            SourceDescriptor(
                variable=variable,
                day_offset=day_offset,
                filename=filename,
                url=f"{root}/{filename}",
                hour=hour,
                member=member,
            )
        )
    return tuple(descriptors)
