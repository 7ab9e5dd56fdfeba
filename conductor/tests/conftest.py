# CFSv2 Forecast Rotator - Test Fixtures
# SPDX-License-Identifier: Apache-2.0

"""
Shared fixtures: synthetic gridMET-like netCDF files and a fake THREDDS
archive served through a requests-compatible session.
"""

import threading
from itertools import product
from pathlib import Path

import numpy as np
import pytest
import requests
import xarray as xr

from rotator.config import RotatorSettings
from rotator.fetcher import Fetcher
from rotator.sources import ISSUANCE_HOURS, MEMBERS
from rotator.window import WindowManager

BASE_URL = "http://archive.test/cfsv2_metdata_90day"


def write_grid(
    path: Path,
    value: float,
    name: str = "fm1000",
    start: str = "2026-10-19",
    days: int = 5,
    n_lat: int = 4,
    n_lon: int = 5,
    lat_shift: float = 0.0,
    crs_axis: float = 6378137.0,
    dtype=np.float32,
) -> Path:
    """Write a constant-valued (day, lat, lon) grid shaped like gridMET CFSv2 files"""
    first = np.datetime64(start, "D")
    times = (first + np.arange(days)).astype("datetime64[ns]")
    lats = np.linspace(49.0, 25.0, n_lat) + lat_shift
    lons = np.linspace(-124.0, -67.0, n_lon)

    ds = xr.Dataset(
        {
            name: (
                ("day", "lat", "lon"),
                np.full((days, n_lat, n_lon), value, dtype=dtype),
                {"units": "Percent", "grid_mapping": "crs"},
            ),
            "crs": ((), np.int32(0), {"grid_mapping_name": "latitude_longitude", "semi_major_axis": crs_axis}),
        },
        coords={"day": times, "lat": lats, "lon": lons},
        attrs={"title": "synthetic CFSv2 forecast"},
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    ds.to_netcdf(path, engine="netcdf4")
    return path


class FakeResponse:
    def __init__(self, status_code: int, body: bytes = b""):
        self.status_code = status_code
        self.body = body
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """
    Serves routes keyed by URL.

    A route value may be bytes (200), an int status code, an exception
    instance to raise, or a list of those consumed one per request.
    Unknown URLs answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, stream=False, timeout=None):
        with self._lock:
            self.calls.append(url)
            route = self.routes.get(url, 404)
            if isinstance(route, list):
                route = route.pop(0) if len(route) > 1 else route[0]

        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return FakeResponse(route)
        return FakeResponse(200, route)

    def count(self, url: str) -> int:
        return self.calls.count(url)


class FakeArchive:
    """Publishes synthetic files into a FakeSession under BASE_URL"""

    def __init__(self, workdir: Path):
        self.workdir = workdir
        self.session = FakeSession()
        self._bodies = {}

    def url(self, filename: str) -> str:
        return f"{BASE_URL}/{filename}"

    def serve(self, filename: str, route):
        """Install a raw route (bytes, status code, exception or list of them)"""
        self.session.routes[self.url(filename)] = route

    def publish(self, filename: str, value: float, **grid) -> bytes:
        key = (float(value), tuple(sorted(grid.items())))
        if key not in self._bodies:
            path = write_grid(self.workdir / f"grid{len(self._bodies)}.nc", float(value), **grid)
            self._bodies[key] = path.read_bytes()
        body = self._bodies[key]
        self.serve(filename, body)
        return body

    def publish_ensemble(self, variable: str, day_offset: int, value=1.0, missing=(), **grid):
        """Publish all 16 members; labels in `missing` (e.g. '06_3') are left out"""
        for i, (hour, member) in enumerate(product(ISSUANCE_HOURS, MEMBERS)):
            if f"{hour}_{member}" in missing:
                continue
            member_value = value(i) if callable(value) else value
            self.publish(
                f"cfsv2_metdata_forecast_{variable}_daily_{hour}_{member}_{day_offset}.nc",
                member_value,
                name=variable,
                **grid,
            )

    def publish_aggregated(self, variable: str, day_offset: int, value=1.0, **grid) -> bytes:
        return self.publish(
            f"cfsv2_metdata_forecast_{variable}_daily_{day_offset}.nc",
            value,
            name=variable,
            **grid,
        )


@pytest.fixture
def archive(tmp_path):
    return FakeArchive(tmp_path / "archive")


@pytest.fixture
def settings(tmp_path):
    return RotatorSettings(
        data_dir=tmp_path / "forecasts",
        log_dir=tmp_path / "log",
        base_url=BASE_URL,
        max_attempts=2,
        backoff_min=0,
        backoff_max=0,
        check_freshness=False,
    )


@pytest.fixture
def manager(settings, archive):
    fetcher = Fetcher.from_settings(settings, session=archive.session)
    return WindowManager(settings, fetcher=fetcher)


@pytest.fixture
def grid_file(tmp_path):
    """Factory writing synthetic grids under tmp_path/grids"""
    def _make(filename: str, value: float, **grid) -> Path:
        return write_grid(tmp_path / "grids" / filename, value, **grid)
    return _make
