# CFSv2 Forecast Rotator - Aggregator
# SPDX-License-Identifier: Apache-2.0

"""
Reduce an EnsembleSet to one normalized netCDF file.

Ensemble variables:
    mean(x, y, t) = (1 / k) * sum_i member_i(x, y, t)
over the k members that were actually fetched (1 <= k <= 16). No weighting,
no renormalization against the nominal 16. Members must agree on variables,
spatial dimensions, spatial coordinates and coordinate reference; the time
dimension is restricted to the steps every member has.

Aggregated variables:
    The single fetched file is passed through after checking that it opens,
    carries the time dimension, and matches the grid of the previous output.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import xarray as xr

from rotator.errors import AggregationToolFailure, NoDataAvailable, StructuralMismatch
from rotator.fetcher import EnsembleSet
from rotator.variables import FormatKind

logger = logging.getLogger(__name__)

READ_ERRORS = (OSError, ValueError, RuntimeError)

# On-disk packing of a member; the mean is written in its own float dtype
PACKING_KEYS = {"dtype", "scale_factor", "add_offset", "_FillValue", "missing_value"}


class Aggregator:
    """Ensemble averaging and pass-through validation"""

    def __init__(self, time_dim: str = "day"):
        self.time_dim = time_dim

    def aggregate(
        self,
        kind: FormatKind,
        ensemble: EnsembleSet,
        target: Path,
        reference: Optional[Path] = None,
    ) -> Path:
        """
        Produce the normalized output for one (variable, day-offset).

        Args:
            kind: Publication format of the variable
            ensemble: Fetch outcomes; only successes are used
            target: Where to write the ensemble mean (unused for pass-through)
            reference: Previous normalized output, if any, for schema checks

        Returns:
            Path of the file to commit
        """
        paths = ensemble.paths
        if not paths:
            raise NoDataAvailable(f"0 of {len(ensemble)} sources downloaded")

        if kind == FormatKind.AGGREGATED:
            self.validate(paths[0], reference)
            return paths[0]

        return self.ensemble_mean(paths, target)

    def validate(self, path: Path, reference: Optional[Path] = None):
        """Check a pass-through file against the previous output's grid"""
        try:
            ds = xr.load_dataset(path)
        except READ_ERRORS as e:
            raise StructuralMismatch(f"{path.name} is not a readable gridded dataset: {e}") from e

        if self.time_dim not in ds.dims:
            raise StructuralMismatch(f"{path.name} has no '{self.time_dim}' dimension")

        if reference is None or not reference.exists():
            return

        try:
            previous = xr.load_dataset(reference)
        except READ_ERRORS as e:
            logger.warning(f"Previous output {reference.name} unreadable, skipping schema check: {e}")
            return

        problem = self._compare(self.grid_signature(previous), self.grid_signature(ds))
        if problem:
            raise StructuralMismatch(f"{path.name} differs from previous output: {problem}")

    def ensemble_mean(self, paths: Sequence[Path], target: Path) -> Path:
        """Average members cell by cell and write the result to target"""
        datasets = []
        for path in paths:
            try:
                datasets.append(xr.load_dataset(path))
            except READ_ERRORS as e:
                raise AggregationToolFailure(f"cannot read member {path.name}: {e}") from e

        first = datasets[0]
        if self.time_dim not in first.dims:
            raise StructuralMismatch(f"{paths[0].name} has no '{self.time_dim}' dimension")

        expected = self.grid_signature(first)
        if not expected["data_vars"]:
            raise StructuralMismatch(f"{paths[0].name} has no variables on '{self.time_dim}'")

        for path, ds in zip(paths[1:], datasets[1:]):
            problem = self._compare(expected, self.grid_signature(ds))
            if problem:
                raise StructuralMismatch(f"member {path.name}: {problem}")

        try:
            aligned = xr.align(*datasets, join="inner")
        except ValueError as e:
            raise StructuralMismatch(f"members cannot be aligned on '{self.time_dim}': {e}") from e

        if aligned[0].sizes[self.time_dim] == 0:
            raise StructuralMismatch(f"members share no '{self.time_dim}' steps")

        k = len(aligned)
        out = aligned[0].copy()
        for name in expected["data_vars"]:
            stacked = xr.concat([ds[name] for ds in aligned], dim="member")
            mean = stacked.mean(dim="member", keep_attrs=True)
            mean.encoding = {k: v for k, v in first[name].encoding.items() if k not in PACKING_KEYS}
            out[name] = mean
        out.attrs["ensemble_members"] = k

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            out.to_netcdf(target, engine="netcdf4")
        except READ_ERRORS as e:
            target.unlink(missing_ok=True)
            raise AggregationToolFailure(f"writing ensemble mean failed: {e}") from e

        if not target.exists() or target.stat().st_size == 0:
            raise AggregationToolFailure("ensemble mean produced an empty file")

        logger.debug(f"Wrote ensemble mean of {k} members to {target}")
        return target

    def grid_signature(self, ds: xr.Dataset) -> dict:
        """Schema, spatial grid and coordinate reference of a dataset"""
        spatial_dims = sorted(str(d) for d in ds.dims if d != self.time_dim)
        return {
            "data_vars": sorted(str(v) for v in ds.data_vars if self.time_dim in ds[v].dims),
            "dims": {d: int(ds.sizes[d]) for d in spatial_dims},
            "coords": {d: ds[d].values for d in spatial_dims if d in ds.coords},
            "crs": self._crs(ds),
        }

    def _crs(self, ds: xr.Dataset) -> dict:
        names = {ds[v].attrs.get("grid_mapping") for v in ds.data_vars} - {None}
        if "crs" in ds.variables:
            names.add("crs")

        crs = {}
        for name in sorted(names):
            if name in ds.variables:
                crs[name] = sorted((k, str(v)) for k, v in ds[name].attrs.items())
        if "crs" in ds.attrs:
            crs["global"] = str(ds.attrs["crs"])
        return crs

    @staticmethod
    def _compare(expected: dict, actual: dict) -> Optional[str]:
        """Describe the first structural difference, or None"""
        if actual["data_vars"] != expected["data_vars"]:
            return f"variables {actual['data_vars']} != {expected['data_vars']}"
        if actual["dims"] != expected["dims"]:
            return f"grid {actual['dims']} != {expected['dims']}"
        for dim, values in expected["coords"].items():
            other = actual["coords"].get(dim)
            if other is None or not np.array_equal(values, other):
                return f"'{dim}' coordinates differ"
        if actual["crs"] != expected["crs"]:
            return "coordinate reference differs"
        return None
